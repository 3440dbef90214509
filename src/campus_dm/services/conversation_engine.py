"""Conversation engine: direct-message lifecycle and permission matrix.

A conversation is opened by its initiator with a first message and starts
``pending``. Only the recipient may move it to ``active`` or ``ignored``,
once. Messages can be sent by either party while ``active`` and by nobody
otherwise; each accepted message bumps the other party's unread counter.

All authorization rules live here so every transport enforces them the
same way. Atomicity is delegated to the repository.
"""

from typing import Optional, Tuple

import structlog

from ..domain.errors import (
    Forbidden,
    InvalidArgument,
    InvalidStateTransition,
    NotFound,
)
from ..domain.models import (
    Conversation,
    ConversationStatus,
    ConversationSummary,
    Inbox,
    Message,
    Party,
    ThreadView,
    utcnow,
)
from ..repositories.base import Repository

logger = structlog.get_logger()

DEFAULT_MAX_MESSAGE_LENGTH = 5000

# Same message for "missing" and "not yours" so ids cannot be probed
CONVERSATION_NOT_FOUND = "Conversation not found or access denied."

RESPONSE_DECISIONS = (ConversationStatus.ACTIVE, ConversationStatus.IGNORED)


class ConversationEngine:
    """Owns conversation and message state transitions."""

    def __init__(
        self,
        repository: Repository,
        max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
    ) -> None:
        self.repository = repository
        self.max_message_length = max_message_length

    def _clean_content(self, content: Optional[str]) -> str:
        if not isinstance(content, str) or not content.strip():
            raise InvalidArgument("Message content is required.")
        content = content.strip()
        if len(content) > self.max_message_length:
            raise InvalidArgument(
                f"Message content must be at most {self.max_message_length} characters."
            )
        return content

    async def _load_for_participant(self, conversation_id: str, party: Party) -> Conversation:
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None or not conversation.has_participant(party.id):
            logger.warning(
                "conversation_access_denied",
                conversation_id=conversation_id,
                party_id=party.id,
                exists=conversation is not None,
            )
            raise NotFound(CONVERSATION_NOT_FOUND)
        return conversation

    async def start_conversation(
        self, initiator: Party, recipient_id: str, content: Optional[str]
    ) -> Tuple[Conversation, Message]:
        """Open a pending conversation with its first message.

        Returns ``(conversation, message)``. Raises ConversationAlreadyExists
        when the pair already has a conversation in either direction.
        """
        if not recipient_id:
            raise InvalidArgument("Receiver ID and a message are required.")
        content = self._clean_content(content)
        if recipient_id == initiator.id:
            raise InvalidArgument("You cannot send a message to yourself.")

        recipient = await self.repository.get_party(recipient_id)
        if recipient is None:
            raise NotFound("Receiver profile not found.")

        now = utcnow()
        conversation = Conversation(
            initiator_id=initiator.id,
            recipient_id=recipient.id,
            status=ConversationStatus.PENDING,
            unread_count_initiator=0,
            unread_count_recipient=1,
            last_message_at=now,
            created_at=now,
            updated_at=now,
        )
        message = Message(
            conversation_id=conversation.id,
            sender_id=initiator.id,
            content=content,
            created_at=now,
        )
        conversation = await self.repository.create_conversation(conversation, message)
        logger.info(
            "conversation_started",
            conversation_id=conversation.id,
            initiator_id=initiator.id,
            recipient_id=recipient.id,
        )
        return conversation, message

    async def respond_to_conversation(
        self, conversation_id: str, party: Party, decision, mark_read: bool = False
    ) -> Conversation:
        """Accept or ignore a pending request. Recipient only.

        With ``mark_read`` the recipient's unread counter is zeroed in the
        same store write as the status change.
        """
        try:
            decision = ConversationStatus(decision)
        except ValueError:
            raise InvalidArgument("Invalid status update. Must be active or ignored.")
        if decision not in RESPONSE_DECISIONS:
            raise InvalidArgument("Invalid status update. Must be active or ignored.")

        conversation = await self._load_for_participant(conversation_id, party)
        if party.id != conversation.recipient_id:
            raise Forbidden("Only the recipient can accept or ignore a request.")
        if conversation.status != ConversationStatus.PENDING:
            raise InvalidStateTransition("Conversation is not in a pending state.")

        updated = await self.repository.transition_status(
            conversation_id,
            ConversationStatus.PENDING,
            decision,
            mark_read_party_id=party.id if mark_read else None,
        )
        if updated is None:
            # Lost a race with another response
            raise InvalidStateTransition("Conversation is not in a pending state.")

        logger.info(
            "conversation_status_changed",
            conversation_id=conversation_id,
            party_id=party.id,
            status=decision.value,
        )
        return updated

    async def mark_read(self, conversation_id: str, party: Party) -> Conversation:
        """Zero the caller's unread counter."""
        await self._load_for_participant(conversation_id, party)
        updated = await self.repository.mark_read(conversation_id, party.id)
        if updated is None:
            raise NotFound(CONVERSATION_NOT_FOUND)
        logger.debug("conversation_marked_read", conversation_id=conversation_id, party_id=party.id)
        return updated

    async def update_conversation(
        self,
        conversation_id: str,
        party: Party,
        status=None,
        mark_read: bool = False,
    ) -> Conversation:
        """Apply a status decision and/or a read marker.

        A decision and the read marker are written together, so a failed
        request leaves nothing behind and can be retried as is.
        """
        conversation = await self._load_for_participant(conversation_id, party)
        if status:
            return await self.respond_to_conversation(
                conversation_id, party, status, mark_read=mark_read
            )
        if mark_read:
            return await self.mark_read(conversation_id, party)
        return conversation

    async def send_message(
        self, conversation_id: str, sender: Party, content: Optional[str]
    ) -> Message:
        """Append a message to an active conversation."""
        if not conversation_id:
            raise InvalidArgument("Conversation ID and message content are required.")
        content = self._clean_content(content)
        conversation = await self._load_for_participant(conversation_id, sender)
        self._check_can_send(conversation, sender)

        message = Message(
            conversation_id=conversation_id,
            sender_id=sender.id,
            content=content,
        )
        stored = await self.repository.append_message(message)
        if stored is None:
            # Status moved between the check and the write
            current = await self._load_for_participant(conversation_id, sender)
            self._check_can_send(current, sender)
            raise InvalidStateTransition("This conversation is not accepting messages.")

        logger.info(
            "message_sent",
            conversation_id=conversation_id,
            sender_id=sender.id,
            content_length=len(content),
        )
        return stored

    @staticmethod
    def _check_can_send(conversation: Conversation, sender: Party) -> None:
        if conversation.status == ConversationStatus.IGNORED:
            raise InvalidStateTransition(
                "This conversation is ignored. You cannot send further messages."
            )
        if conversation.status == ConversationStatus.PENDING:
            if sender.id == conversation.initiator_id:
                raise InvalidStateTransition(
                    "Please wait for the user to respond before sending more messages."
                )
            raise InvalidStateTransition("You must accept the request before messaging.")

    async def list_conversations_for_party(self, party: Party) -> Inbox:
        """Build the caller's inbox, most recently active first."""
        conversations = await self.repository.list_conversations(party.id)
        others = await self.repository.get_parties(
            c.other_party_id(party.id) for c in conversations
        )
        latest = await self.repository.get_latest_messages(c.id for c in conversations)

        summaries = []
        for conversation in conversations:
            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    status=conversation.status,
                    created_at=conversation.created_at,
                    updated_at=conversation.updated_at,
                    last_message_at=conversation.last_message_at,
                    is_initiator=conversation.initiator_id == party.id,
                    other_party=others.get(conversation.other_party_id(party.id)),
                    unread_count=conversation.unread_count_for(party.id),
                    last_message=latest.get(conversation.id),
                )
            )
        return Inbox(
            conversations=summaries,
            total_unread_count=sum(s.unread_count for s in summaries),
        )

    async def get_thread(
        self,
        conversation_id: str,
        party: Party,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> ThreadView:
        """Return conversation metadata and its messages, oldest first."""
        if limit is not None and limit < 1:
            raise InvalidArgument("limit must be a positive integer.")
        if offset < 0:
            raise InvalidArgument("offset must not be negative.")
        conversation = await self._load_for_participant(conversation_id, party)
        other = await self.repository.get_party(conversation.other_party_id(party.id))
        messages = await self.repository.get_messages(conversation_id, limit=limit, offset=offset)
        return ThreadView(
            conversation=conversation,
            is_initiator=conversation.initiator_id == party.id,
            is_recipient=conversation.recipient_id == party.id,
            other_party=other,
            messages=messages,
        )
