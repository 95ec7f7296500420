"""
Database Models

customers      - one row per WhatsApp phone number
conversations  - triage threads, at most one non-resolved per customer
messages       - append-only message log, arrival order = seq
settings       - singleton JSON document (id = "app_settings")
"""

import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Integer,
    JSON, String, Text, text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Reserved agent id for automated (welcome / away) messages
SYSTEM_AGENT_ID = "system"
APP_SETTINGS_ID = "app_settings"

PHONE_MAX_LENGTH = 32
NAME_MAX_LENGTH = 200
MESSAGE_ID_MAX_LENGTH = 255


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are stored without tz)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class ConversationStatus(str, enum.Enum):
    NEW = "new"            # unclaimed, waiting for triage
    CLAIMED = "claimed"    # owned by agent_id
    RESOLVED = "resolved"  # closed, never an inbound append target


class Sender(str, enum.Enum):
    CUSTOMER = "customer"
    AGENT = "agent"


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=new_id)
    phone = Column(String(PHONE_MAX_LENGTH), nullable=False, unique=True, index=True)
    name = Column(String(NAME_MAX_LENGTH), nullable=True)
    is_blocked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Customer ...{self.phone[-4:]} blocked={self.is_blocked}>"


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # One open conversation per customer; a concurrent second insert fails here.
        Index(
            "uq_conversations_open_customer",
            "customer_id",
            unique=True,
            postgresql_where=text("status <> 'resolved'"),
            sqlite_where=text("status <> 'resolved'"),
        ),
        Index("ix_conversations_customer_updated", "customer_id", "updated_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False)
    agent_id = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default=ConversationStatus.NEW.value)
    last_message_preview = Column(Text, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    internal_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return f"<Conversation {self.id[:8]} {self.status} unread={self.unread_count}>"


class Message(Base):
    __tablename__ = "messages"

    seq = Column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    id = Column(String(MESSAGE_ID_MAX_LENGTH), nullable=False, unique=True)  # provider wamid for inbound
    conversation_id = Column(
        String(36), ForeignKey("conversations.id"), nullable=False, index=True
    )
    text = Column(Text, nullable=False, default="")
    sender = Column(String(16), nullable=False)
    agent_id = Column(String(64), nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    attachment_url = Column(Text, nullable=True)
    attachment_name = Column(String(255), nullable=True)
    attachment_type = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AppSettingsRecord(Base):
    __tablename__ = "settings"

    id = Column(String(64), primary_key=True, default=APP_SETTINGS_ID)
    content = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
