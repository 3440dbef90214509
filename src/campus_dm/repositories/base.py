"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from ..domain.models import Conversation, ConversationStatus, Message, Party


class Repository(ABC):
    """Abstract base class for the relational store behind the engine.

    Implementations own the atomicity guarantees: the unordered party-pair
    uniqueness check, the conversation-plus-first-message insert, and the
    message-plus-counter update each happen in a single transaction.
    """

    async def init(self) -> None:
        """Prepare the store for use."""

    async def close(self) -> None:
        """Release store resources."""

    @abstractmethod
    async def add_party(self, party: Party) -> Party:
        """Register a party profile."""
        pass

    @abstractmethod
    async def get_party(self, party_id: str) -> Optional[Party]:
        """Retrieve a party by profile id."""
        pass

    @abstractmethod
    async def get_party_by_user_id(self, user_id: str) -> Optional[Party]:
        """Retrieve the party owned by an auth user."""
        pass

    @abstractmethod
    async def get_parties(self, party_ids: Iterable[str]) -> Dict[str, Party]:
        """Retrieve several parties keyed by id. Unknown ids are skipped."""
        pass

    @abstractmethod
    async def create_conversation(
        self, conversation: Conversation, first_message: Message
    ) -> Conversation:
        """Insert a conversation and its first message atomically.

        Raises ConversationAlreadyExists when the party pair already has a
        conversation, in either direction.
        """
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def list_conversations(self, party_id: str) -> List[Conversation]:
        """List a party's conversations, most recent activity first."""
        pass

    @abstractmethod
    async def transition_status(
        self,
        conversation_id: str,
        expected: ConversationStatus,
        new_status: ConversationStatus,
        mark_read_party_id: Optional[str] = None,
    ) -> Optional[Conversation]:
        """Set ``new_status`` only if the current status is ``expected``.

        When ``mark_read_party_id`` is given, that party's unread counter is
        zeroed in the same write. Returns the updated conversation, or None
        when the status did not match.
        """
        pass

    @abstractmethod
    async def mark_read(self, conversation_id: str, party_id: str) -> Optional[Conversation]:
        """Zero the unread counter that belongs to ``party_id``."""
        pass

    @abstractmethod
    async def append_message(self, message: Message) -> Optional[Message]:
        """Insert a message and bump the other party's unread counter.

        Both writes only happen while the conversation is active. The stored
        timestamp is moved past the conversation's last message if needed,
        so ``last_message_at`` never goes backwards and thread order has no
        ties. Returns the stored message, or None when the conversation was
        not active.
        """
        pass

    @abstractmethod
    async def get_messages(
        self, conversation_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[Message]:
        """Get messages for a conversation in chronological order."""
        pass

    @abstractmethod
    async def get_latest_messages(
        self, conversation_ids: Iterable[str]
    ) -> Dict[str, Message]:
        """Get the most recent message of each conversation."""
        pass
