from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field

from marketchat.schemas.message import ConfirmedMessage, LogEntry
from marketchat.utils.timefmt import DEFAULT_DISPLAY_NAME


class Profile(BaseModel):

    id: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @computed_field  # type: ignore[misc]
    @property
    def display_name(self) -> str:
        return self.full_name or DEFAULT_DISPLAY_NAME


class LastMessage(BaseModel):

    id: str
    content: str
    sent_at: datetime
    sender_id: str


class ConversationListEntry(BaseModel):

    id: str
    counterpart: Profile
    created_at: datetime
    last_message: Optional[LastMessage] = None
    # latest message time, or creation time for an empty conversation
    last_activity_at: datetime
    time_label: Optional[str] = None
    is_own_last_message: bool = False


class ConversationList(BaseModel):

    items: List[ConversationListEntry]


class ResolveConversationRequest(BaseModel):

    counterpart_id: str = Field(min_length=1)


class ResolveConversationResponse(BaseModel):

    conversation_id: str


class QuickContactRequest(BaseModel):

    counterpart_id: str = Field(min_length=1)
    content: str = Field(min_length=1, max_length=4000)


class QuickContactResponse(BaseModel):

    conversation_id: str
    message: ConfirmedMessage


class SessionSnapshot(BaseModel):
    """What a connected client renders for one open conversation."""

    type: str = "snapshot"
    conversation_id: str
    counterpart: Optional[Profile] = None
    entries: List[LogEntry]
    draft: str = ""
    sending: bool = False
    error: Optional[str] = None
