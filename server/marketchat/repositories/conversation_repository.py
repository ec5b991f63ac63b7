from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from marketchat.models.conversation import ConversationDocument
from marketchat.utils.change_feed import ChangeFeed
from marketchat.utils.errors import ConflictResolved


def make_pair_key(user_a: str, user_b: str) -> str:
    low, high = sorted([user_a, user_b])
    return f"{low}:{high}"


class ConversationRepository:

    table = "conversations"

    def __init__(self, db: AsyncIOMotorDatabase, feed: Optional[ChangeFeed] = None) -> None:
        self._db = db
        self._feed = feed

    @property
    def collection(self):
        return self._db[self.table]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("pair_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participant_a", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("participant_b", ASCENDING), ("created_at", DESCENDING)])

    async def get(self, conversation_id: str) -> Optional[ConversationDocument]:
        try:
            oid = ObjectId(conversation_id)
        except (InvalidId, TypeError):
            return None
        doc = await self.collection.find_one({"_id": oid})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def find_by_participants(self, participant_a: str, participant_b: str) -> Optional[ConversationDocument]:
        """Ordered lookup; callers check both orders themselves."""
        doc = await self.collection.find_one({"participant_a": participant_a, "participant_b": participant_b})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def create(self, participant_a: str, participant_b: str) -> ConversationDocument:
        doc: ConversationDocument = {
            "participant_a": participant_a,
            "participant_b": participant_b,
            "pair_key": make_pair_key(participant_a, participant_b),
            "created_at": datetime.now(timezone.utc),
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError as exc:
            raise ConflictResolved(f"Conversation {doc['pair_key']} already exists") from exc
        doc["_id"] = str(result.inserted_id)
        if self._feed is not None:
            await self._feed.publish_insert(self.table, doc)
        return doc

    async def list_for_user(self, user_id: str) -> List[ConversationDocument]:
        query = {"$or": [{"participant_a": user_id}, {"participant_b": user_id}]}
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]
        items = await self.collection.find(query).sort(sort).to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items
