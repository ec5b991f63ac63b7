import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.profile_repository import ProfileRepository
from marketchat.schemas.conversation import Profile, SessionSnapshot
from marketchat.schemas.message import ConfirmedMessage, LogEntry, PendingMessage, SenderInfo
from marketchat.services.identity import TokenIdentityProvider
from marketchat.services.message_log import (
    LogAction,
    PendingAppended,
    RemoteInserted,
    SendConfirmed,
    SendFailed,
    reduce_log,
)
from marketchat.utils.change_feed import ChangeFeed, Subscription
from marketchat.utils.errors import (
    ChatError,
    ForbiddenError,
    InvalidOperationError,
    NotAuthenticatedError,
    NotFoundError,
    TransientError,
    classify_store_errors,
)


ChangeListener = Callable[["ConversationSession"], Awaitable[None]]


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


class ConversationSession:
    """Controller for one open conversation.

    ``open`` loads the conversation and its history and subscribes to the
    message feed; ``send`` appends an optimistic entry and reconciles it with
    the store's answer; ``close`` unsubscribes.  Results that arrive after
    ``close`` (in-flight sends, late feed events) are ignored.
    """

    def __init__(
        self,
        conversation_id: str,
        identity: TokenIdentityProvider,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        profile_repo: ProfileRepository,
        feed: ChangeFeed,
    ) -> None:
        self.conversation_id = conversation_id
        self._identity = identity
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._profile_repo = profile_repo
        self._feed = feed

        self.state = SessionState.IDLE
        self.actor_id: Optional[str] = None
        self.counterpart: Optional[Profile] = None
        self.entries: List[LogEntry] = []
        self.draft = ""
        self.last_error: Optional[ChatError] = None

        self._in_flight = 0
        self._send_lock = asyncio.Lock()
        self._senders: Dict[str, Optional[SenderInfo]] = {}
        self._listeners: List[ChangeListener] = []
        self._subscription: Optional[Subscription] = None
        self._unregister_auth: Optional[Callable[[], None]] = None

    @property
    def sending(self) -> bool:
        return self._in_flight > 0

    @property
    def _live(self) -> bool:
        return self.state in (SessionState.LOADING, SessionState.READY)

    def on_change(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            conversation_id=self.conversation_id,
            counterpart=self.counterpart,
            entries=list(self.entries),
            draft=self.draft,
            sending=self.sending,
            error=str(self.last_error) if self.last_error else None,
        )

    async def __aenter__(self) -> "ConversationSession":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Loading

    async def open(self) -> "ConversationSession":
        if self.state is not SessionState.IDLE:
            raise InvalidOperationError(f"Session is already {self.state.value}")
        self.state = SessionState.LOADING
        try:
            await self._load()
        except BaseException:
            await self.close()
            raise
        if self.state is SessionState.LOADING:
            self.state = SessionState.READY
            logger.debug("Session for {} ready with {} messages", self.conversation_id, len(self.entries))
        await self._notify()
        return self

    async def _load(self) -> None:
        actor_id = self._identity.get_current_actor()
        if not actor_id:
            raise NotAuthenticatedError("Sign in to read messages")
        self.actor_id = actor_id

        with classify_store_errors("load conversation"):
            convo = await self._conversation_repo.get(self.conversation_id)
        if convo is None:
            raise NotFoundError(f"Conversation {self.conversation_id} not found")
        participants = (convo["participant_a"], convo["participant_b"])
        if actor_id not in participants:
            raise ForbiddenError(f"Conversation {self.conversation_id} not found")
        counterpart_id = participants[1] if participants[0] == actor_id else participants[0]

        with classify_store_errors("load conversation"):
            for user_id in (actor_id, counterpart_id):
                await self._sender_info(user_id)
            self.counterpart = await self._profile_repo.get_profile(counterpart_id) or Profile(id=counterpart_id)

            # subscribe before reading history so nothing inserted in between is lost
            self._subscription = await self._feed.subscribe(
                MessageRepository.table,
                {"conversation_id": self.conversation_id},
                self._on_message_insert,
            )
            history = await self._message_repo.get_messages_by_conversation(self.conversation_id)

        for doc in history:
            message = ConfirmedMessage.from_document(doc, sender=await self._sender_info(doc["sender_id"]))
            self.entries = reduce_log(self.entries, RemoteInserted(message))

        self._unregister_auth = self._identity.on_auth_change(self._on_auth_change)

    async def _sender_info(self, user_id: str) -> Optional[SenderInfo]:
        if user_id not in self._senders:
            profile = await self._profile_repo.get_profile(user_id)
            self._senders[user_id] = (
                SenderInfo(id=user_id, full_name=profile.full_name, avatar_url=profile.avatar_url) if profile else None
            )
        return self._senders[user_id]

    # ------------------------------------------------------------------
    # Sending

    async def send(self, text: str) -> Optional[ConfirmedMessage]:
        content = (text or "").strip()
        if not content:
            return None
        if self.state is not SessionState.READY:
            raise InvalidOperationError("Conversation is not ready")

        temp_id = f"temp-{uuid.uuid4().hex}"
        pending = PendingMessage(
            id=temp_id,
            conversation_id=self.conversation_id,
            sender_id=self.actor_id,
            content=content,
            sent_at=datetime.now(timezone.utc),
            sender=self._senders.get(self.actor_id),
        )
        self.draft = ""
        self.last_error = None
        self._in_flight += 1
        try:
            try:
                await self._apply(PendingAppended(pending))
                # one insert at a time keeps store order equal to call order
                async with self._send_lock:
                    with classify_store_errors("send message"):
                        doc = await self._message_repo.save_message(
                            self.conversation_id, self.actor_id, content, client_message_id=temp_id
                        )
            finally:
                self._in_flight -= 1
        except TransientError as exc:
            if not self._live:
                return None
            self.draft = text
            self.last_error = exc
            logger.warning("Send failed in conversation {}: {}", self.conversation_id, exc)
            await self._apply(SendFailed(temp_id))
            return None
        except BaseException:
            # no await here: the task may be cancelled
            self.entries = reduce_log(self.entries, SendFailed(temp_id))
            raise

        if not self._live:
            return None
        confirmed = ConfirmedMessage.from_document(doc, sender=self._senders.get(self.actor_id))
        await self._apply(SendConfirmed(temp_id, confirmed))
        return confirmed

    # ------------------------------------------------------------------
    # Feed and auth events

    async def _on_message_insert(self, row: Dict[str, Any]) -> None:
        if not self._live:
            return
        with classify_store_errors("resolve message sender"):
            sender = await self._sender_info(row["sender_id"])
        if not self._live:
            return
        await self._apply(RemoteInserted(ConfirmedMessage.from_document(row, sender=sender)))

    async def _on_auth_change(self, actor_id: Optional[str]) -> None:
        if actor_id != self.actor_id:
            logger.info("Actor changed, closing conversation {}", self.conversation_id)
            await self.close()

    async def _apply(self, action: LogAction) -> None:
        self.entries = reduce_log(self.entries, action)
        await self._notify()

    async def _notify(self) -> None:
        if not self._live:
            return
        for listener in list(self._listeners):
            await listener(self)

    # ------------------------------------------------------------------
    # Teardown

    async def close(self) -> None:
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING
        try:
            if self._unregister_auth is not None:
                self._unregister_auth()
                self._unregister_auth = None
            if self._subscription is not None:
                subscription, self._subscription = self._subscription, None
                await self._feed.unsubscribe(subscription)
        finally:
            self.state = SessionState.CLOSED
            self._listeners.clear()
            logger.debug("Session for {} closed", self.conversation_id)
