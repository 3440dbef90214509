"""Request and response bodies of the HTTP API."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..domain.models import Conversation, ConversationSummary, Message, Party


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StartConversationRequest(_CamelModel):
    """Body of POST /conversations"""

    receiver_id: Optional[str] = Field(default=None, alias="receiverId")
    message_content: Optional[str] = Field(default=None, alias="messageContent")


class UpdateConversationRequest(_CamelModel):
    """Body of PATCH /conversations/{id}"""

    status: Optional[str] = None
    mark_read: bool = Field(default=False, alias="markRead")


class SendMessageRequest(_CamelModel):
    """Body of POST /messages"""

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    content: Optional[str] = None


class StartConversationResponse(_CamelModel):
    conversation_id: str = Field(alias="conversationId")
    message: Message


class InboxResponse(_CamelModel):
    conversations: List[ConversationSummary]
    total_unread_count: int = Field(alias="totalUnreadCount")


class ThreadConversation(Conversation):
    """Conversation as seen by one of its parties."""

    is_initiator: bool
    is_recipient: bool
    other_party: Optional[Party] = None


class ThreadResponse(BaseModel):
    conversation: ThreadConversation
    messages: List[Message]


class ConversationResponse(BaseModel):
    conversation: Conversation


class MessageResponse(BaseModel):
    message: Message
