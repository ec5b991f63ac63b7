from datetime import datetime
from typing import Annotated, Any, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator

from marketchat.utils.timefmt import ensure_utc


class SenderInfo(BaseModel):

    id: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


class _MessageBase(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    content: str
    sent_at: datetime
    sender: Optional[SenderInfo] = None

    @field_validator("sent_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class PendingMessage(_MessageBase):
    """Locally created entry awaiting the store; ``id`` is a temporary id."""

    state: Literal["pending"] = "pending"


class ConfirmedMessage(_MessageBase):
    """Entry acknowledged by the store; ``id`` is the store id."""

    state: Literal["confirmed"] = "confirmed"
    # temp id of the pending entry this row acknowledges, when sent from a session
    client_message_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any], sender: Optional[SenderInfo] = None) -> "ConfirmedMessage":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            content=doc["content"],
            sent_at=doc["sent_at"],
            sender=sender,
            client_message_id=doc.get("client_message_id"),
        )


LogEntry = Annotated[Union[PendingMessage, ConfirmedMessage], Field(discriminator="state")]


class SendMessageRequest(BaseModel):

    content: str = Field(max_length=4000)


class MessageList(BaseModel):

    items: List[ConfirmedMessage]
