from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.models.user import UserDocument


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        try:
            oid = ObjectId(user_id)
        except (InvalidId, TypeError):
            return None
        user = await self._collection.find_one({"_id": oid}, {"hashed_password": 0})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user
