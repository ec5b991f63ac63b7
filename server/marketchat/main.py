"""FastAPI application entry point.

``uvicorn marketchat.main:app`` serves the messaging API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from marketchat.config import get_settings
from marketchat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.routers.conversations import router as conversations_router
from marketchat.utils.change_feed import reset_feed
from marketchat.utils.errors import register_exception_handlers
from marketchat.utils.log import configure_logging
from marketchat.utils.realtime_bus import close_bus


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    db = get_database()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    try:
        yield
    finally:
        reset_feed()
        await close_bus()
        await close_mongo_connection()


def create_app() -> FastAPI:
    configure_logging(get_settings())

    app = FastAPI(title="Marketplace direct messaging", lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(conversations_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        logger.debug("Health check invoked")
        return {"status": "ok"}

    return app


app = create_app()
