from datetime import datetime
from typing import TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    # stored in creation order: a = initiator, b = counterpart
    participant_a: str
    participant_b: str
    # "<min>:<max>" of the two participants, unique index
    pair_key: str
    created_at: datetime
