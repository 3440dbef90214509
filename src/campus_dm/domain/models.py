"""Domain models for direct messaging."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_message_time(candidate: datetime, previous: datetime) -> datetime:
    """Timestamp for a message appended after one stamped ``previous``.

    Message times within a conversation strictly increase in commit order.
    """
    return max(candidate, previous + timedelta(microseconds=1))


def new_id() -> str:
    return str(uuid4())


class ConversationStatus(str, Enum):
    """Lifecycle states of a conversation."""

    PENDING = "pending"
    ACTIVE = "active"
    IGNORED = "ignored"


class Party(BaseModel):
    """A user profile as seen by the messaging core."""

    id: str = Field(default_factory=new_id)
    user_id: str
    name: Optional[str] = None
    user_type: Optional[str] = None


class Message(BaseModel):
    """Message model."""

    id: str = Field(default_factory=new_id)
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    """Conversation model."""

    id: str = Field(default_factory=new_id)
    initiator_id: str
    recipient_id: str
    status: ConversationStatus = ConversationStatus.PENDING
    unread_count_initiator: int = 0
    unread_count_recipient: int = 0
    last_message_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def has_participant(self, party_id: str) -> bool:
        return party_id in (self.initiator_id, self.recipient_id)

    def other_party_id(self, party_id: str) -> str:
        """Return the id of the party opposite ``party_id``."""
        if party_id == self.initiator_id:
            return self.recipient_id
        return self.initiator_id

    def unread_count_for(self, party_id: str) -> int:
        if party_id == self.initiator_id:
            return self.unread_count_initiator
        return self.unread_count_recipient


class ConversationSummary(BaseModel):
    """One row of a party's inbox."""

    id: str
    status: ConversationStatus
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime
    is_initiator: bool
    other_party: Optional[Party] = None
    unread_count: int = 0
    last_message: Optional[Message] = None


class Inbox(BaseModel):
    """All conversations of a party plus the badge total."""

    conversations: List[ConversationSummary] = []
    total_unread_count: int = 0


class ThreadView(BaseModel):
    """Conversation metadata from the caller's point of view."""

    conversation: Conversation
    is_initiator: bool
    is_recipient: bool
    other_party: Optional[Party] = None
    messages: List[Message] = []
