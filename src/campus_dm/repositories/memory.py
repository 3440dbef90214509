"""In-memory repository implementation."""

import asyncio
from typing import Dict, FrozenSet, Iterable, List, Optional

import structlog

from ..domain.errors import ConversationAlreadyExists
from ..domain.models import (
    Conversation,
    ConversationStatus,
    Message,
    Party,
    next_message_time,
    utcnow,
)
from .base import Repository

logger = structlog.get_logger()


class InMemoryRepository(Repository):
    """Async-safe in-memory repository.

    Every read-modify-write runs under a single asyncio lock, which plays
    the role of a database transaction. The pair index is the unique
    constraint over the unordered party pair.
    """

    def __init__(self) -> None:
        self._parties: Dict[str, Party] = {}
        self._parties_by_user: Dict[str, str] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._pair_index: Dict[FrozenSet[str], str] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._lock = asyncio.Lock()
        logger.info("repository_initialized", backend="memory")

    async def add_party(self, party: Party) -> Party:
        async with self._lock:
            self._parties[party.id] = party
            self._parties_by_user[party.user_id] = party.id
        return party

    async def get_party(self, party_id: str) -> Optional[Party]:
        async with self._lock:
            return self._parties.get(party_id)

    async def get_party_by_user_id(self, user_id: str) -> Optional[Party]:
        async with self._lock:
            party_id = self._parties_by_user.get(user_id)
            return self._parties.get(party_id) if party_id else None

    async def get_parties(self, party_ids: Iterable[str]) -> Dict[str, Party]:
        async with self._lock:
            return {pid: self._parties[pid] for pid in party_ids if pid in self._parties}

    async def create_conversation(
        self, conversation: Conversation, first_message: Message
    ) -> Conversation:
        pair = frozenset((conversation.initiator_id, conversation.recipient_id))
        async with self._lock:
            existing_id = self._pair_index.get(pair)
            if existing_id is not None:
                existing = self._conversations[existing_id]
                logger.info(
                    "conversation_pair_exists",
                    conversation_id=existing_id,
                    status=existing.status.value,
                )
                raise ConversationAlreadyExists(existing_id, existing.status.value)

            stored = conversation.model_copy()
            self._conversations[stored.id] = stored
            self._pair_index[pair] = stored.id
            self._messages[stored.id] = [first_message.model_copy()]
            logger.info("conversation_created", conversation_id=stored.id)
            return stored.model_copy()

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy() if conversation else None

    async def list_conversations(self, party_id: str) -> List[Conversation]:
        async with self._lock:
            conversations = [
                c.model_copy()
                for c in self._conversations.values()
                if c.has_participant(party_id)
            ]
        return sorted(conversations, key=lambda c: c.last_message_at, reverse=True)

    async def transition_status(
        self,
        conversation_id: str,
        expected: ConversationStatus,
        new_status: ConversationStatus,
        mark_read_party_id: Optional[str] = None,
    ) -> Optional[Conversation]:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.status != expected:
                return None
            conversation.status = new_status
            if mark_read_party_id is not None:
                self._zero_unread(conversation, mark_read_party_id)
            conversation.updated_at = utcnow()
            return conversation.model_copy()

    @staticmethod
    def _zero_unread(conversation: Conversation, party_id: str) -> None:
        if party_id == conversation.initiator_id:
            conversation.unread_count_initiator = 0
        elif party_id == conversation.recipient_id:
            conversation.unread_count_recipient = 0

    async def mark_read(self, conversation_id: str, party_id: str) -> Optional[Conversation]:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return None
            self._zero_unread(conversation, party_id)
            conversation.updated_at = utcnow()
            return conversation.model_copy()

    async def append_message(self, message: Message) -> Optional[Message]:
        async with self._lock:
            conversation = self._conversations.get(message.conversation_id)
            if (
                conversation is None
                or conversation.status != ConversationStatus.ACTIVE
                or not conversation.has_participant(message.sender_id)
            ):
                return None

            stored = message.model_copy(
                update={
                    "created_at": next_message_time(
                        message.created_at, conversation.last_message_at
                    )
                }
            )
            self._messages.setdefault(conversation.id, []).append(stored)
            if message.sender_id == conversation.initiator_id:
                conversation.unread_count_recipient += 1
            else:
                conversation.unread_count_initiator += 1
            conversation.last_message_at = stored.created_at
            conversation.updated_at = stored.created_at
            return stored.model_copy()

    async def get_messages(
        self, conversation_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[Message]:
        async with self._lock:
            # Appends are stamped in increasing order, so the list is chronological
            messages = list(self._messages.get(conversation_id, []))
        end = None if limit is None else offset + limit
        return [m.model_copy() for m in messages[offset:end]]

    async def get_latest_messages(
        self, conversation_ids: Iterable[str]
    ) -> Dict[str, Message]:
        latest: Dict[str, Message] = {}
        async with self._lock:
            for conversation_id in conversation_ids:
                messages = self._messages.get(conversation_id)
                if messages:
                    latest[conversation_id] = messages[-1].model_copy()
        return latest
