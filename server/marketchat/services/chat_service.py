from typing import Any, Dict, List, Optional

from loguru import logger

from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.profile_repository import ProfileRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.schemas.conversation import ConversationListEntry
from marketchat.schemas.message import ConfirmedMessage, SenderInfo
from marketchat.services.conversation_list import ConversationListViewModel
from marketchat.services.directory import ConversationDirectory
from marketchat.utils.errors import ForbiddenError, InvalidOperationError, NotFoundError, classify_store_errors


class ChatService:
    """Request-scoped operations behind the REST endpoints."""

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        user_repo: UserRepository,
        profile_repo: ProfileRepository,
        conversation_order: str = "activity",
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._profile_repo = profile_repo
        self._conversation_order = conversation_order
        self.directory = ConversationDirectory(conversation_repo, user_repo)

    def conversation_list(self, actor_id: str, feed=None) -> ConversationListViewModel:
        return ConversationListViewModel(
            actor_id,
            self._conversation_repo,
            self._message_repo,
            self._profile_repo,
            self.directory,
            feed=feed,
            order=self._conversation_order,
        )

    async def list_conversations(self, actor_id: str) -> List[ConversationListEntry]:
        return await self.conversation_list(actor_id).load_conversations()

    async def resolve_conversation(self, actor_id: str, counterpart_id: str) -> str:
        return await self.directory.resolve_conversation(actor_id, counterpart_id)

    async def _require_participant(self, actor_id: str, conversation_id: str) -> Dict[str, Any]:
        with classify_store_errors("load conversation"):
            convo = await self._conversation_repo.get(conversation_id)
        if convo is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if actor_id not in (convo["participant_a"], convo["participant_b"]):
            raise ForbiddenError(f"Conversation {conversation_id} not found")
        return convo

    async def _sender(self, user_id: str, cache: Dict[str, Optional[SenderInfo]]) -> Optional[SenderInfo]:
        if user_id not in cache:
            profile = await self._profile_repo.get_profile(user_id)
            cache[user_id] = SenderInfo(**profile.model_dump(include={"id", "full_name", "avatar_url"})) if profile else None
        return cache[user_id]

    async def get_history(self, actor_id: str, conversation_id: str) -> List[ConfirmedMessage]:
        await self._require_participant(actor_id, conversation_id)
        senders: Dict[str, Optional[SenderInfo]] = {}
        with classify_store_errors("load messages"):
            docs = await self._message_repo.get_messages_by_conversation(conversation_id)
            return [ConfirmedMessage.from_document(doc, sender=await self._sender(doc["sender_id"], senders)) for doc in docs]

    async def send_message(self, actor_id: str, conversation_id: str, content: str) -> ConfirmedMessage:
        content = (content or "").strip()
        if not content:
            raise InvalidOperationError("Message content cannot be empty")
        await self._require_participant(actor_id, conversation_id)
        with classify_store_errors("send message"):
            doc = await self._message_repo.save_message(conversation_id, actor_id, content)
            sender = await self._sender(actor_id, {})
        return ConfirmedMessage.from_document(doc, sender=sender)

    async def quick_contact(self, actor_id: str, counterpart_id: str, content: str) -> Dict[str, Any]:
        """Resolve the conversation with a seller and post a canned question in one call."""
        if not (content or "").strip():
            raise InvalidOperationError("Message content cannot be empty")
        conversation_id = await self.directory.resolve_conversation(actor_id, counterpart_id)
        message = await self.send_message(actor_id, conversation_id, content)
        logger.info("Quick contact from {} to {} in {}", actor_id, counterpart_id, conversation_id)
        return {"conversation_id": conversation_id, "message": message}
