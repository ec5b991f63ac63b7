"""Application settings loaded from environment variables.

Values are read from the host environment or a ``.env`` file next to the
process working directory.  ``get_settings`` caches the instance so every
module sees the same configuration.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    # ---------------------------------------------------------------------
    # Storage
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "marketchat"

    # ---------------------------------------------------------------------
    # Realtime change feed; without redis the feed stays in-process
    redis_url: Optional[str] = None

    # ---------------------------------------------------------------------
    # Identity provider tokens
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_minutes: int = 60 * 24

    # ---------------------------------------------------------------------
    # Profiles and conversation list
    storage_public_url: str = "http://localhost:54321/storage/v1/object/public"
    conversation_order: Literal["activity", "created"] = "activity"

    # ---------------------------------------------------------------------
    # Logging
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
