import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect

from marketchat.repositories.conversation_repository import make_pair_key
from marketchat.schemas.conversation import Profile
from marketchat.services.identity import TokenIdentityProvider
from marketchat.utils.change_feed import ChangeFeed
from marketchat.utils.errors import ConflictResolved
from marketchat.utils.realtime_bus import LocalBus
from marketchat.utils.security import create_access_token


class FakeConversationRepository:
    """In-memory stand-in that enforces the unique ``pair_key`` index.

    Every call yields to the loop once so concurrent callers interleave the
    way they would against a real server.
    """

    table = "conversations"

    def __init__(self, feed: Optional[ChangeFeed] = None) -> None:
        self._feed = feed
        self.rows: List[Dict[str, Any]] = []
        self.calls: List[str] = []
        self.unavailable = False

    async def _io(self, name: str) -> None:
        self.calls.append(name)
        await asyncio.sleep(0)
        if self.unavailable:
            raise AutoReconnect("conversations unavailable")

    async def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        await self._io("get")
        return next((dict(r) for r in self.rows if r["_id"] == conversation_id), None)

    async def find_by_participants(self, participant_a: str, participant_b: str) -> Optional[Dict[str, Any]]:
        await self._io("find_by_participants")
        for row in self.rows:
            if row["participant_a"] == participant_a and row["participant_b"] == participant_b:
                return dict(row)
        return None

    async def create(self, participant_a: str, participant_b: str) -> Dict[str, Any]:
        await self._io("create")
        key = make_pair_key(participant_a, participant_b)
        if any(r["pair_key"] == key for r in self.rows):
            raise ConflictResolved(f"Conversation {key} already exists")
        doc = {
            "_id": str(ObjectId()),
            "participant_a": participant_a,
            "participant_b": participant_b,
            "pair_key": key,
            "created_at": datetime.now(timezone.utc),
        }
        self.rows.append(doc)
        if self._feed is not None:
            await self._feed.publish_insert(self.table, doc)
        return dict(doc)

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        await self._io("list_for_user")
        rows = [dict(r) for r in self.rows if user_id in (r["participant_a"], r["participant_b"])]
        return sorted(rows, key=lambda r: r["created_at"], reverse=True)


class FakeMessageRepository:

    table = "messages"

    def __init__(self, feed: Optional[ChangeFeed] = None) -> None:
        self._feed = feed
        self.rows: List[Dict[str, Any]] = []
        self.saved: List[str] = []
        self.fail_saves = False
        # raised as-is by save_message when set
        self.error: Optional[BaseException] = None
        # when set, save_message waits for it before storing
        self.gate: Optional[asyncio.Event] = None

    async def save_message(
        self, conversation_id: str, sender_id: str, content: str, client_message_id: Optional[str] = None
    ) -> Dict[str, Any]:
        self.saved.append(content)
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_saves:
            raise AutoReconnect("messages unavailable")
        if self.error is not None:
            raise self.error
        doc = {
            "_id": str(ObjectId()),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "sent_at": datetime.now(timezone.utc),
            "client_message_id": client_message_id,
        }
        self.rows.append(doc)
        if self._feed is not None:
            await self._feed.publish_insert(self.table, doc)
        return dict(doc)

    async def get_messages_by_conversation(self, conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        rows = [dict(r) for r in self.rows if r["conversation_id"] == conversation_id]
        rows.sort(key=lambda r: r["sent_at"])
        return rows[:limit] if limit else rows

    async def get_latest(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.get_messages_by_conversation(conversation_id)
        return rows[-1] if rows else None


class FakeUserRepository:

    def __init__(self, user_ids) -> None:
        self._users = {uid: {"_id": uid, "email": f"{uid}@example.com"} for uid in user_ids}

    async def get_user_by_id(self, user_id: str) -> Optional[dict]:
        await asyncio.sleep(0)
        user = self._users.get(user_id)
        return dict(user) if user else None


class FakeProfileRepository:

    def __init__(self, profiles: Dict[str, Profile]) -> None:
        self.profiles = profiles

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        await asyncio.sleep(0)
        return self.profiles.get(user_id)


@pytest.fixture
def alice_id() -> str:
    return str(ObjectId())


@pytest.fixture
def bob_id() -> str:
    return str(ObjectId())


@pytest.fixture
def carol_id() -> str:
    return str(ObjectId())


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed(LocalBus())


@pytest.fixture
def conversation_repo(feed) -> FakeConversationRepository:
    return FakeConversationRepository(feed)


@pytest.fixture
def message_repo(feed) -> FakeMessageRepository:
    return FakeMessageRepository(feed)


@pytest.fixture
def user_repo(alice_id, bob_id, carol_id) -> FakeUserRepository:
    return FakeUserRepository([alice_id, bob_id, carol_id])


@pytest.fixture
def profile_repo(alice_id, bob_id) -> FakeProfileRepository:
    # carol has no profile row yet
    return FakeProfileRepository({
        alice_id: Profile(id=alice_id, full_name="Alice Nguyen", avatar_url="https://cdn.example.com/a.png"),
        bob_id: Profile(id=bob_id, full_name="Bob Tran"),
    })


@pytest.fixture
def token_for():
    return create_access_token


@pytest.fixture
def identity_for():
    def _make(user_id: Optional[str]) -> TokenIdentityProvider:
        return TokenIdentityProvider(create_access_token(user_id) if user_id else None)

    return _make
