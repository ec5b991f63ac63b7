from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from marketchat.repositories.conversation_repository import ConversationRepository, make_pair_key
from marketchat.repositories.message_repository import MessageRepository
from marketchat.utils.errors import ConflictResolved


class StubCursor:

    def __init__(self, rows: List[Dict[str, Any]]) -> None:
        self._rows = rows
        self.sort_keys = None

    def sort(self, keys):
        self.sort_keys = keys
        return self

    async def to_list(self, length=None):
        return [dict(r) for r in self._rows]


class StubCollection:
    """Records what the repository asks of a motor collection."""

    def __init__(self) -> None:
        self.indexes: List[tuple] = []
        self.inserted: List[Dict[str, Any]] = []
        self.finds: List[Dict[str, Any]] = []
        self.rows: List[Dict[str, Any]] = []
        self.duplicate = False
        self.cursor = None

    async def create_index(self, keys, **kwargs) -> None:
        self.indexes.append((keys, kwargs))

    async def insert_one(self, doc):
        if self.duplicate:
            raise DuplicateKeyError("E11000 duplicate key error collection: conversations index: pair_key_1")
        # motor adds the generated id to the passed document
        doc["_id"] = ObjectId()
        self.inserted.append(dict(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query, *args, **kwargs):
        self.finds.append(query)
        return None

    def find(self, query):
        self.finds.append(query)
        self.cursor = StubCursor(self.rows)
        return self.cursor


@pytest.fixture
def collection() -> StubCollection:
    return StubCollection()


@pytest.fixture
def db(collection):
    return {"conversations": collection, "messages": collection}


@pytest.fixture
async def published(feed):
    rows = []

    async def _collect(row):
        rows.append(row)

    subscriptions = [
        await feed.subscribe("conversations", None, _collect),
        await feed.subscribe("messages", None, _collect),
    ]
    yield rows
    for subscription in subscriptions:
        await feed.unsubscribe(subscription)


class TestConversationRepository:

    def test_pair_key_ignores_participant_order(self, alice_id, bob_id):
        assert make_pair_key(alice_id, bob_id) == make_pair_key(bob_id, alice_id)
        assert make_pair_key(alice_id, bob_id) == ":".join(sorted([alice_id, bob_id]))

    async def test_pair_key_index_is_unique(self, db, collection):
        await ConversationRepository(db).ensure_indexes()

        assert ([("pair_key", ASCENDING)], {"unique": True}) in collection.indexes

    async def test_create_keeps_caller_order_and_publishes(self, db, collection, feed, published, alice_id, bob_id):
        doc = await ConversationRepository(db, feed).create(bob_id, alice_id)

        assert doc["participant_a"] == bob_id
        assert doc["participant_b"] == alice_id
        assert doc["pair_key"] == make_pair_key(alice_id, bob_id)
        assert isinstance(doc["_id"], str)
        assert [row["_id"] for row in published] == [doc["_id"]]

    async def test_duplicate_pair_becomes_conflict_resolved(self, db, collection, feed, published, alice_id, bob_id):
        """
        Scenario: a concurrent insert for the same pair already won the unique index.
        Expected: ConflictResolved, and no insert event is published.
        """
        collection.duplicate = True

        with pytest.raises(ConflictResolved) as excinfo:
            await ConversationRepository(db, feed).create(alice_id, bob_id)

        assert isinstance(excinfo.value.__cause__, DuplicateKeyError)
        assert published == []

    async def test_list_for_user_matches_either_side(self, db, collection, alice_id, bob_id):
        oid = ObjectId()
        collection.rows = [{"_id": oid, "participant_a": bob_id, "participant_b": alice_id}]

        items = await ConversationRepository(db).list_for_user(alice_id)

        assert collection.finds == [{"$or": [{"participant_a": alice_id}, {"participant_b": alice_id}]}]
        assert items[0]["_id"] == str(oid)
        assert collection.cursor.sort_keys == [("created_at", DESCENDING), ("_id", DESCENDING)]

    async def test_get_with_malformed_id_skips_the_store(self, db, collection):
        assert await ConversationRepository(db).get("not-an-object-id") is None
        assert collection.finds == []


class TestMessageRepository:

    async def test_save_message_carries_client_message_id_into_feed(self, db, collection, feed, published, alice_id):
        doc = await MessageRepository(db, feed).save_message("c1", alice_id, "Hello", client_message_id="temp-1")

        assert collection.inserted[0]["client_message_id"] == "temp-1"
        assert published[0]["_id"] == doc["_id"]
        assert published[0]["client_message_id"] == "temp-1"
