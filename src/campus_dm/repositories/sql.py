"""SQLAlchemy repository implementation.

Works against Postgres (``postgresql+asyncpg://``) in production and SQLite
(``sqlite+aiosqlite://``) in tests. Uniqueness of the unordered party pair is
a table constraint over the ordered ``(party_low_id, party_high_id)`` columns,
so two concurrent inserts for the same pair cannot both commit.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    case,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..domain.errors import ConversationAlreadyExists, StorageUnavailable
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


class Base(DeclarativeBase):
    pass


class ProfileRow(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    user_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)


class ConversationRow(Base):
    __tablename__ = "dm_conversations"
    __table_args__ = (
        UniqueConstraint("party_low_id", "party_high_id", name="uq_dm_conversations_pair"),
        CheckConstraint("initiator_id <> recipient_id", name="ck_dm_conversations_distinct"),
        Index("ix_dm_conversations_initiator", "initiator_id"),
        Index("ix_dm_conversations_recipient", "recipient_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    initiator_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=False)
    # Sorted copy of the pair, for the uniqueness constraint only
    party_low_id: Mapped[str] = mapped_column(String(36), nullable=False)
    party_high_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    unread_count_initiator: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unread_count_recipient: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MessageRow(Base):
    __tablename__ = "dm_messages"
    __table_args__ = (Index("ix_dm_messages_conversation_created", "conversation_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("dm_conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_party(row: ProfileRow) -> Party:
    return Party(id=row.id, user_id=row.user_id, name=row.name, user_type=row.user_type)


def _to_conversation(row: ConversationRow) -> Conversation:
    return Conversation(
        id=row.id,
        initiator_id=row.initiator_id,
        recipient_id=row.recipient_id,
        status=ConversationStatus(row.status),
        unread_count_initiator=row.unread_count_initiator,
        unread_count_recipient=row.unread_count_recipient,
        last_message_at=_aware(row.last_message_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _to_message(row: MessageRow) -> Message:
    return Message(
        id=row.id,
        conversation_id=row.conversation_id,
        sender_id=row.sender_id,
        content=row.content,
        created_at=_aware(row.created_at),
    )


def _zero_unread_values(party_id: str) -> dict:
    """UPDATE values that zero the counter owned by ``party_id``."""
    return {
        "unread_count_initiator": case(
            (ConversationRow.initiator_id == party_id, 0),
            else_=ConversationRow.unread_count_initiator,
        ),
        "unread_count_recipient": case(
            (ConversationRow.recipient_id == party_id, 0),
            else_=ConversationRow.unread_count_recipient,
        ),
    }


class SQLAlchemyRepository(Repository):
    """Relational repository over an async SQLAlchemy engine."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True)
        self._session_factory = async_sessionmaker(
            bind=self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init(self) -> None:
        """Create tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("repository_initialized", backend="sql", dialect=self.engine.dialect.name)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except IntegrityError:
            raise
        except (SQLAlchemyError, OSError) as e:
            logger.error("storage_error", operation=operation, error=str(e))
            raise StorageUnavailable(
                "The message store is temporarily unavailable. Please retry."
            ) from e

    async def add_party(self, party: Party) -> Party:
        async with self._session("add_party") as session:
            async with session.begin():
                await session.merge(
                    ProfileRow(
                        id=party.id,
                        user_id=party.user_id,
                        name=party.name,
                        user_type=party.user_type,
                    )
                )
        return party

    async def get_party(self, party_id: str) -> Optional[Party]:
        async with self._session("get_party") as session:
            row = await session.get(ProfileRow, party_id)
            return _to_party(row) if row else None

    async def get_party_by_user_id(self, user_id: str) -> Optional[Party]:
        async with self._session("get_party_by_user_id") as session:
            result = await session.execute(
                select(ProfileRow).where(ProfileRow.user_id == user_id)
            )
            row = result.scalar_one_or_none()
            return _to_party(row) if row else None

    async def get_parties(self, party_ids: Iterable[str]) -> Dict[str, Party]:
        ids = list(set(party_ids))
        if not ids:
            return {}
        async with self._session("get_parties") as session:
            result = await session.execute(select(ProfileRow).where(ProfileRow.id.in_(ids)))
            return {row.id: _to_party(row) for row in result.scalars()}

    async def create_conversation(
        self, conversation: Conversation, first_message: Message
    ) -> Conversation:
        low, high = sorted((conversation.initiator_id, conversation.recipient_id))
        try:
            async with self._session("create_conversation") as session:
                async with session.begin():
                    session.add(
                        ConversationRow(
                            id=conversation.id,
                            initiator_id=conversation.initiator_id,
                            recipient_id=conversation.recipient_id,
                            party_low_id=low,
                            party_high_id=high,
                            status=conversation.status.value,
                            unread_count_initiator=conversation.unread_count_initiator,
                            unread_count_recipient=conversation.unread_count_recipient,
                            last_message_at=conversation.last_message_at,
                            created_at=conversation.created_at,
                            updated_at=conversation.updated_at,
                        )
                    )
                    await session.flush()
                    session.add(
                        MessageRow(
                            id=first_message.id,
                            conversation_id=conversation.id,
                            sender_id=first_message.sender_id,
                            content=first_message.content,
                            created_at=first_message.created_at,
                        )
                    )
        except IntegrityError as e:
            existing = await self._find_by_pair(low, high)
            if existing is None:
                logger.error("conversation_insert_rejected", error=str(e))
                raise StorageUnavailable("Failed to create conversation thread.") from e
            logger.info(
                "conversation_pair_exists",
                conversation_id=existing.id,
                status=existing.status.value,
            )
            raise ConversationAlreadyExists(existing.id, existing.status.value) from e

        logger.info("conversation_created", conversation_id=conversation.id)
        return conversation

    async def _find_by_pair(self, low: str, high: str) -> Optional[Conversation]:
        async with self._session("find_by_pair") as session:
            result = await session.execute(
                select(ConversationRow).where(
                    ConversationRow.party_low_id == low,
                    ConversationRow.party_high_id == high,
                )
            )
            row = result.scalar_one_or_none()
            return _to_conversation(row) if row else None

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._session("get_conversation") as session:
            row = await session.get(ConversationRow, conversation_id)
            return _to_conversation(row) if row else None

    async def list_conversations(self, party_id: str) -> List[Conversation]:
        async with self._session("list_conversations") as session:
            result = await session.execute(
                select(ConversationRow)
                .where(
                    or_(
                        ConversationRow.initiator_id == party_id,
                        ConversationRow.recipient_id == party_id,
                    )
                )
                .order_by(ConversationRow.last_message_at.desc())
            )
            return [_to_conversation(row) for row in result.scalars()]

    async def transition_status(
        self,
        conversation_id: str,
        expected: ConversationStatus,
        new_status: ConversationStatus,
        mark_read_party_id: Optional[str] = None,
    ) -> Optional[Conversation]:
        values = {"status": new_status.value, "updated_at": utcnow()}
        if mark_read_party_id is not None:
            values.update(_zero_unread_values(mark_read_party_id))
        async with self._session("transition_status") as session:
            async with session.begin():
                result = await session.execute(
                    update(ConversationRow)
                    .where(
                        ConversationRow.id == conversation_id,
                        ConversationRow.status == expected.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
            row = await session.get(ConversationRow, conversation_id, populate_existing=True)
            return _to_conversation(row) if row else None

    async def mark_read(self, conversation_id: str, party_id: str) -> Optional[Conversation]:
        async with self._session("mark_read") as session:
            async with session.begin():
                result = await session.execute(
                    update(ConversationRow)
                    .where(ConversationRow.id == conversation_id)
                    .values(updated_at=utcnow(), **_zero_unread_values(party_id))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
            row = await session.get(ConversationRow, conversation_id, populate_existing=True)
            return _to_conversation(row) if row else None

    async def append_message(self, message: Message) -> Optional[Message]:
        sender = message.sender_id
        async with self._session("append_message") as session:
            async with session.begin():
                # The conditional update also takes the row lock for the rest
                # of the transaction, so the stamp below cannot interleave
                result = await session.execute(
                    update(ConversationRow)
                    .where(
                        ConversationRow.id == message.conversation_id,
                        ConversationRow.status == ConversationStatus.ACTIVE.value,
                        or_(
                            ConversationRow.initiator_id == sender,
                            ConversationRow.recipient_id == sender,
                        ),
                    )
                    .values(
                        unread_count_recipient=ConversationRow.unread_count_recipient
                        + case((ConversationRow.initiator_id == sender, 1), else_=0),
                        unread_count_initiator=ConversationRow.unread_count_initiator
                        + case((ConversationRow.recipient_id == sender, 1), else_=0),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None

                previous = await session.scalar(
                    select(ConversationRow.last_message_at).where(
                        ConversationRow.id == message.conversation_id
                    )
                )
                stored = message.model_copy(
                    update={"created_at": next_message_time(message.created_at, _aware(previous))}
                )
                await session.execute(
                    update(ConversationRow)
                    .where(ConversationRow.id == message.conversation_id)
                    .values(last_message_at=stored.created_at, updated_at=stored.created_at)
                    .execution_options(synchronize_session=False)
                )
                session.add(
                    MessageRow(
                        id=stored.id,
                        conversation_id=stored.conversation_id,
                        sender_id=sender,
                        content=stored.content,
                        created_at=stored.created_at,
                    )
                )
            return stored

    async def get_messages(
        self, conversation_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[Message]:
        stmt = (
            select(MessageRow)
            .where(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.created_at.asc(), MessageRow.id.asc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session("get_messages") as session:
            result = await session.execute(stmt)
            return [_to_message(row) for row in result.scalars()]

    async def get_latest_messages(
        self, conversation_ids: Iterable[str]
    ) -> Dict[str, Message]:
        ids = list(conversation_ids)
        if not ids:
            return {}
        ranked = (
            select(
                MessageRow.id.label("id"),
                func.row_number()
                .over(
                    partition_by=MessageRow.conversation_id,
                    order_by=(MessageRow.created_at.desc(), MessageRow.id.desc()),
                )
                .label("rank"),
            )
            .where(MessageRow.conversation_id.in_(ids))
            .subquery()
        )
        stmt = select(MessageRow).join(
            ranked, and_(MessageRow.id == ranked.c.id, ranked.c.rank == 1)
        )
        async with self._session("get_latest_messages") as session:
            result = await session.execute(stmt)
            return {row.conversation_id: _to_message(row) for row in result.scalars()}
