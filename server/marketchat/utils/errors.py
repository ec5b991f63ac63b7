"""Error taxonomy for the messaging core and its HTTP mapping."""

from contextlib import contextmanager
from typing import Iterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pymongo.errors import PyMongoError
from redis.exceptions import RedisError


class ChatError(Exception):
    """Base class for every error raised by the messaging core."""

    status_code = 500


class NotFoundError(ChatError):
    """Referenced actor or conversation does not exist."""

    status_code = 404


class ForbiddenError(NotFoundError):
    """The actor is not a participant of the conversation."""

    status_code = 403


class InvalidOperationError(ChatError):
    """Rejected before any store call (self-conversation, session not ready)."""

    status_code = 400


class TransientError(ChatError):
    """Store or feed unavailable; safe to retry."""

    status_code = 503


class NotAuthenticatedError(ChatError):

    status_code = 401


class ConflictResolved(ChatError):
    """A concurrent create won the unique pair index.

    Raised by the conversation repository and always handled by the
    directory, which re-reads the winning row.
    """

    status_code = 409


@contextmanager
def classify_store_errors(action: str) -> Iterator[None]:
    """Turn driver level failures into ``TransientError``."""
    try:
        yield
    except (PyMongoError, RedisError) as exc:
        logger.warning("Store unavailable while trying to {}: {!r}", action, exc)
        raise TransientError(f"Could not {action}, please retry") from exc


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("{} on {} {}: {}", type(exc).__name__, request.method, request.url.path, exc)
    else:
        logger.info("{} on {} {}: {}", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatError, chat_error_handler)
