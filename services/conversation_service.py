"""
Conversation Service

Resolver:
    find_active(customer_id) -> newest non-resolved conversation

Mutator (inbound):
    append_inbound / create_new

Mutator (agent + automated):
    append_outbound, claim, resolve, reopen, mark_read, update_notes

Messages live in an append-only table, so an append is an INSERT and two
concurrent appenders can never overwrite each other. Every write bumps
updated_at (never backwards) and publishes a realtime event.
"""

import structlog
from datetime import datetime
from typing import List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ConversationConflict, NoActiveConversation, StorageError
from models import Conversation, ConversationStatus, Message, new_id, utcnow
from schemas import Attachment, MessageRecord
from services.realtime import RealtimePublisher

logger = structlog.get_logger("conversation_service")

VIEWS = ("new", "mine", "resolved", "all")


def _bumped_updated_at(now: datetime):
    """SQL expression: max(updated_at, now), keeps the ordering key monotonic."""
    return case((Conversation.updated_at > now, Conversation.updated_at), else_=now)


def to_row(conversation_id: str, message: MessageRecord) -> Message:
    attachment = message.attachment
    return Message(
        id=message.id,
        conversation_id=conversation_id,
        text=message.text or "",
        sender=message.sender.value,
        agent_id=message.agent_id,
        timestamp=message.timestamp.replace(tzinfo=None) if message.timestamp.tzinfo else message.timestamp,
        attachment_url=attachment.url if attachment else None,
        attachment_name=attachment.file_name if attachment else None,
        attachment_type=attachment.mime_type if attachment else None,
    )


def to_record(row: Message) -> MessageRecord:
    attachment = None
    if row.attachment_url:
        attachment = Attachment(
            url=row.attachment_url,
            file_name=row.attachment_name or "",
            mime_type=row.attachment_type or "application/octet-stream",
        )
    return MessageRecord(
        id=row.id,
        text=row.text,
        sender=row.sender,
        agent_id=row.agent_id,
        timestamp=row.timestamp,
        attachment=attachment,
    )


class ConversationService:
    def __init__(self, db: AsyncSession, realtime: RealtimePublisher):
        self.db = db
        self.realtime = realtime

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        try:
            return await self.db.get(Conversation, conversation_id, populate_existing=True)
        except SQLAlchemyError as e:
            raise StorageError(f"Conversation lookup failed: {e}") from e

    async def find_active(self, customer_id: str) -> Conversation:
        """Most recently updated conversation that is not resolved."""
        stmt = (
            select(Conversation)
            .where(
                Conversation.customer_id == customer_id,
                Conversation.status != ConversationStatus.RESOLVED.value,
            )
            .order_by(Conversation.updated_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Active conversation lookup failed: {e}") from e

        conversation = result.scalars().first()
        if conversation is None:
            raise NoActiveConversation(customer_id)
        return conversation

    async def message_exists(self, message_id: str) -> bool:
        try:
            result = await self.db.execute(select(Message.seq).where(Message.id == message_id))
            return result.first() is not None
        except SQLAlchemyError as e:
            raise StorageError(f"Message lookup failed: {e}") from e

    async def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.seq)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Message listing failed: {e}") from e
        return [to_record(row) for row in result.scalars().all()]

    async def list_for_view(self, view: str, agent_id: Optional[str] = None) -> List[Conversation]:
        """
        Dashboard list. "mine" is a filter over claimed conversations for the
        viewing agent, not a status of its own.
        """
        stmt = select(Conversation)
        if view == "new":
            stmt = stmt.where(Conversation.status == ConversationStatus.NEW.value)
        elif view == "mine":
            stmt = stmt.where(
                Conversation.status == ConversationStatus.CLAIMED.value,
                Conversation.agent_id == agent_id,
            )
        elif view == "resolved":
            stmt = stmt.where(Conversation.status == ConversationStatus.RESOLVED.value)
        elif view != "all":
            raise ValueError(f"Unknown view: {view}")

        stmt = stmt.order_by(Conversation.updated_at.desc()).execution_options(populate_existing=True)
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Conversation listing failed: {e}") from e
        return list(result.scalars().all())

    # =========================================================================
    # INBOUND MUTATIONS
    # =========================================================================

    async def append_inbound(
        self, conversation: Conversation, message: MessageRecord, preview: str
    ) -> Optional[Conversation]:
        """
        Customer message into an existing conversation: one transaction that
        inserts the message, refreshes the preview, increments unread, forces
        status back to new and bumps updated_at.

        Returns None when the message id was already stored.
        """
        conversation_id, customer_id = conversation.id, conversation.customer_id
        if await self.message_exists(message.id):
            logger.info("Duplicate inbound message skipped", message_id=message.id)
            return None

        now = utcnow()
        stmt = (
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(
                last_message_preview=preview,
                unread_count=Conversation.unread_count + 1,
                status=ConversationStatus.NEW.value,
                updated_at=_bumped_updated_at(now),
            )
            .execution_options(synchronize_session=False)
        )

        try:
            await self.db.execute(stmt)
        except IntegrityError as e:
            await self.db.rollback()
            raise ConversationConflict(customer_id) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Conversation update failed: {e}") from e

        stored = await self._commit_message(conversation_id, message)
        if not stored:
            return None

        logger.info(
            "Inbound message appended",
            conversation_id=conversation_id,
            message_id=message.id,
        )
        await self.realtime.updated("conversations", conversation_id)
        return await self.get(conversation_id)

    async def create_new(
        self, customer_id: str, message: MessageRecord, preview: str
    ) -> Optional[Conversation]:
        """
        Open a conversation with its first customer message.

        Raises ConversationConflict if another request opened one first.
        Returns None when the message id was already stored.
        """
        conversation = Conversation(
            id=new_id(),
            customer_id=customer_id,
            status=ConversationStatus.NEW.value,
            last_message_preview=preview,
            unread_count=1,
        )
        self.db.add(conversation)

        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            logger.warning("Concurrent conversation detected", customer_id=customer_id)
            raise ConversationConflict(customer_id) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Conversation create failed: {e}") from e

        stored = await self._commit_message(conversation.id, message)
        if not stored:
            return None

        logger.info("Conversation created", conversation_id=conversation.id, customer_id=customer_id)
        await self.realtime.inserted("conversations", conversation.id)
        return conversation

    # =========================================================================
    # AGENT / AUTOMATED MUTATIONS
    # =========================================================================

    async def append_outbound(
        self, conversation: Conversation, message: MessageRecord, preview: str
    ) -> Optional[Conversation]:
        """Agent or system message: preview + updated_at only, unread/status untouched."""
        conversation_id = conversation.id
        try:
            await self.db.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(last_message_preview=preview, updated_at=_bumped_updated_at(utcnow()))
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Conversation update failed: {e}") from e

        stored = await self._commit_message(conversation_id, message)
        if not stored:
            return None

        logger.info(
            "Outbound message appended",
            conversation_id=conversation_id,
            message_id=message.id,
            agent_id=message.agent_id,
        )
        await self.realtime.updated("conversations", conversation_id)
        return await self.get(conversation_id)

    async def create_claimed(
        self, customer_id: str, agent_id: str, message: MessageRecord, preview: str
    ) -> Optional[Conversation]:
        """Agent-initiated conversation, already owned by the agent."""
        conversation = Conversation(
            id=new_id(),
            customer_id=customer_id,
            agent_id=agent_id,
            status=ConversationStatus.CLAIMED.value,
            last_message_preview=preview,
            unread_count=0,
        )
        self.db.add(conversation)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConversationConflict(customer_id) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Conversation create failed: {e}") from e

        if not await self._commit_message(conversation.id, message):
            return None

        await self.realtime.inserted("conversations", conversation.id)
        return conversation

    async def claim(self, conversation_id: str, agent_id: str) -> Optional[Conversation]:
        return await self._update(
            conversation_id, status=ConversationStatus.CLAIMED.value, agent_id=agent_id
        )

    async def resolve(self, conversation_id: str) -> Optional[Conversation]:
        return await self._update(conversation_id, status=ConversationStatus.RESOLVED.value)

    async def reopen(self, conversation_id: str) -> Optional[Conversation]:
        return await self._update(conversation_id, status=ConversationStatus.NEW.value)

    async def mark_read(self, conversation_id: str) -> Optional[Conversation]:
        return await self._update(conversation_id, unread_count=0)

    async def update_notes(self, conversation_id: str, notes: str) -> Optional[Conversation]:
        return await self._update(conversation_id, internal_notes=notes)

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _update(self, conversation_id: str, **values) -> Optional[Conversation]:
        values["updated_at"] = _bumped_updated_at(utcnow())
        stmt = (
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConversationConflict(conversation_id) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Conversation update failed: {e}") from e

        if result.rowcount == 0:
            return None

        await self.realtime.updated("conversations", conversation_id)
        return await self.get(conversation_id)

    async def _commit_message(self, conversation_id: str, message: MessageRecord) -> bool:
        """Insert the message row and commit the surrounding transaction."""
        self.db.add(to_row(conversation_id, message))
        try:
            await self.db.commit()
        except IntegrityError:
            # Same provider message id landed from a concurrent retry
            await self.db.rollback()
            logger.info("Duplicate message rejected by database", message_id=message.id)
            return False
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Message insert failed: {e}") from e
        return True
