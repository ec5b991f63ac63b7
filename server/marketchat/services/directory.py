from typing import Optional

from loguru import logger

from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.utils.errors import (
    ConflictResolved,
    InvalidOperationError,
    NotFoundError,
    TransientError,
    classify_store_errors,
)


class ConversationDirectory:
    """Maps an unordered pair of actors to exactly one conversation id.

    Conversations are created lazily.  Two callers racing to create the same
    pair are settled by the unique ``pair_key`` index: the loser gets a
    duplicate-key violation and re-reads the winner's row.
    """

    def __init__(self, conversation_repo: ConversationRepository, user_repo: UserRepository) -> None:
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo

    async def _lookup(self, actor_id: str, counterpart_id: str) -> Optional[str]:
        # storage keeps caller order, so both orders have to be checked
        convo = await self._conversation_repo.find_by_participants(actor_id, counterpart_id)
        if convo is None:
            convo = await self._conversation_repo.find_by_participants(counterpart_id, actor_id)
        return convo["_id"] if convo else None

    async def find_conversation(self, actor_id: str, counterpart_id: str) -> Optional[str]:
        with classify_store_errors("look up conversation"):
            return await self._lookup(actor_id, counterpart_id)

    async def resolve_conversation(self, actor_id: str, counterpart_id: str) -> str:
        if not actor_id or not counterpart_id:
            raise InvalidOperationError("Both participants are required")
        if actor_id == counterpart_id:
            raise InvalidOperationError("Cannot start a conversation with yourself")

        with classify_store_errors("resolve conversation"):
            for user_id in (counterpart_id, actor_id):
                if await self._user_repo.get_user_by_id(user_id) is None:
                    raise NotFoundError(f"User {user_id} not found")

            existing = await self._lookup(actor_id, counterpart_id)
            if existing:
                logger.debug("Conversation {} found for {} and {}", existing, actor_id, counterpart_id)
                return existing

            try:
                created = await self._conversation_repo.create(actor_id, counterpart_id)
            except ConflictResolved:
                logger.info("Concurrent create for {} and {}, re-reading the winner", actor_id, counterpart_id)
            else:
                logger.debug("Conversation {} created for {} and {}", created["_id"], actor_id, counterpart_id)
                return created["_id"]

            winner = await self._lookup(actor_id, counterpart_id)

        if winner is None:
            raise TransientError("Conversation could not be created, please retry")
        return winner
