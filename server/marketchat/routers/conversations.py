from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from loguru import logger

from marketchat.config import Settings, get_settings
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.profile_repository import ProfileRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.schemas.conversation import (
    ConversationList,
    QuickContactRequest,
    QuickContactResponse,
    ResolveConversationRequest,
    ResolveConversationResponse,
)
from marketchat.schemas.message import ConfirmedMessage, MessageList, SendMessageRequest
from marketchat.services.chat_service import ChatService
from marketchat.services.identity import TokenIdentityProvider
from marketchat.services.session import ConversationSession
from marketchat.utils.change_feed import ChangeFeed
from marketchat.utils.dependencies import (
    feed_dependency,
    get_conversation_repository,
    get_current_actor,
    get_message_repository,
    get_profile_repository,
    get_user_repository,
)
from marketchat.utils.errors import ForbiddenError, NotAuthenticatedError, NotFoundError, TransientError


router = APIRouter(prefix="/conversations", tags=["chat"])


def get_chat_service(
    conversation_repo: ConversationRepository = Depends(get_conversation_repository),
    message_repo: MessageRepository = Depends(get_message_repository),
    user_repo: UserRepository = Depends(get_user_repository),
    profile_repo: ProfileRepository = Depends(get_profile_repository),
    settings: Settings = Depends(get_settings),
) -> ChatService:
    return ChatService(conversation_repo, message_repo, user_repo, profile_repo, settings.conversation_order)


@router.get("", response_model=ConversationList)
async def list_conversations(actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    items = await service.list_conversations(actor_id)
    return {"items": items}


@router.post("", response_model=ResolveConversationResponse)
async def resolve_conversation(body: ResolveConversationRequest, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    conversation_id = await service.resolve_conversation(actor_id, body.counterpart_id)
    return {"conversation_id": conversation_id}


@router.post("/quick", response_model=QuickContactResponse)
async def quick_contact(body: QuickContactRequest, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    return await service.quick_contact(actor_id, body.counterpart_id, body.content)


@router.get("/{conversation_id}/messages", response_model=MessageList)
async def list_messages(conversation_id: str, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    items = await service.get_history(actor_id, conversation_id)
    return {"items": items}


@router.post("/{conversation_id}/messages", response_model=ConfirmedMessage)
async def send_message(conversation_id: str, body: SendMessageRequest, actor_id: str = Depends(get_current_actor), service: ChatService = Depends(get_chat_service)):
    return await service.send_message(actor_id, conversation_id, body.content)


@router.websocket("/{conversation_id}/ws")
async def conversation_socket(
    websocket: WebSocket,
    conversation_id: str,
    conversation_repo: ConversationRepository = Depends(get_conversation_repository),
    message_repo: MessageRepository = Depends(get_message_repository),
    profile_repo: ProfileRepository = Depends(get_profile_repository),
    feed: ChangeFeed = Depends(feed_dependency),
):
    # browsers cannot set headers on WS: token comes as ?token=...
    token = websocket.query_params.get("token")
    try:
        identity = TokenIdentityProvider(token)
    except NotAuthenticatedError:
        await websocket.close(code=4401)
        return
    if identity.get_current_actor() is None:
        await websocket.close(code=4401)
        return

    session = ConversationSession(conversation_id, identity, conversation_repo, message_repo, profile_repo, feed)

    async def _push(s: ConversationSession) -> None:
        await websocket.send_text(s.snapshot().model_dump_json())

    try:
        await session.open()
    except ForbiddenError:
        await websocket.close(code=4403)
        return
    except NotFoundError:
        await websocket.close(code=4404)
        return
    except TransientError:
        await websocket.close(code=1011)
        return

    await websocket.accept()
    session.on_change(_push)
    try:
        await _push(session)
        while True:
            try:
                msg = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "error", "error": "Frame is not valid JSON"})
                continue
            if not isinstance(msg, dict):
                await websocket.send_json({"type": "error", "error": "Frame must be a JSON object"})
                continue
            kind = msg.get("type")
            if kind == "send":
                await session.send(str(msg.get("content") or ""))
            elif kind == "draft":
                session.draft = str(msg.get("content") or "")
            elif kind == "sign_out":
                await identity.sign_out()
                await websocket.close(code=4401)
                return
            else:
                await websocket.send_json({"type": "error", "error": f"Unknown frame type {kind!r}"})
    except WebSocketDisconnect:
        logger.debug("Client left conversation {}", conversation_id)
    finally:
        await session.close()
