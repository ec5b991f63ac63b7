from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.config import Settings, get_settings
from marketchat.database.connection import mongo_db_dependency
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.profile_repository import ProfileRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.services.identity import TokenIdentityProvider
from marketchat.utils.change_feed import ChangeFeed, get_feed
from marketchat.utils.errors import NotAuthenticatedError


bearer_scheme = HTTPBearer(auto_error=False)


async def feed_dependency() -> ChangeFeed:
    return await get_feed()


def get_conversation_repository(
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    feed: ChangeFeed = Depends(feed_dependency),
) -> ConversationRepository:
    return ConversationRepository(db, feed)


def get_message_repository(
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    feed: ChangeFeed = Depends(feed_dependency),
) -> MessageRepository:
    return MessageRepository(db, feed)


def get_user_repository(db: AsyncIOMotorDatabase = Depends(mongo_db_dependency)) -> UserRepository:
    return UserRepository(db)


def get_profile_repository(
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    settings: Settings = Depends(get_settings),
) -> ProfileRepository:
    return ProfileRepository(db, settings.storage_public_url)


async def get_current_actor(credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)) -> str:
    if credentials is None:
        raise NotAuthenticatedError("Missing bearer token")
    return TokenIdentityProvider(credentials.credentials).get_current_actor()
