from datetime import datetime, timezone
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from marketchat.models.message import MessageDocument
from marketchat.utils.change_feed import ChangeFeed


class MessageRepository:

    table = "messages"

    def __init__(self, db: AsyncIOMotorDatabase, feed: Optional[ChangeFeed] = None) -> None:
        self._db = db
        self._feed = feed

    @property
    def collection(self):
        return self._db[self.table]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("sent_at", ASCENDING), ("_id", ASCENDING)])

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "sent_at": datetime.now(timezone.utc),
            "client_message_id": client_message_id,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        if self._feed is not None:
            await self._feed.publish_insert(self.table, doc)
        return doc

    async def get_messages_by_conversation(self, conversation_id: str, limit: Optional[int] = None) -> List[MessageDocument]:
        # ObjectId order breaks ties between equal timestamps
        cur = self.collection.find({"conversation_id": conversation_id}).sort([("sent_at", ASCENDING), ("_id", ASCENDING)])
        if limit:
            cur = cur.limit(limit)
        items = await cur.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def get_latest(self, conversation_id: str) -> Optional[MessageDocument]:
        doc = await self.collection.find_one(
            {"conversation_id": conversation_id},
            sort=[("sent_at", DESCENDING), ("_id", DESCENDING)],
        )
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc
