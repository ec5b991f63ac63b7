from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.models.user import ProfileDocument
from marketchat.schemas.conversation import Profile
from marketchat.utils.timefmt import resolve_avatar_url


class ProfileRepository:
    """Profile resolver over the ``user_profiles`` collection.

    A profile row may not exist yet for a freshly registered user; callers
    get ``None`` in that case.
    """

    def __init__(self, db: AsyncIOMotorDatabase, storage_public_url: str) -> None:
        self._collection = db.get_collection("user_profiles")
        self._storage_public_url = storage_public_url

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        doc: Optional[ProfileDocument] = await self._collection.find_one({"_id": user_id}, {"full_name": 1, "avatar_url": 1})
        if not doc:
            return None
        return Profile(
            id=str(doc["_id"]),
            full_name=doc.get("full_name"),
            avatar_url=resolve_avatar_url(doc.get("avatar_url"), self._storage_public_url),
        )
