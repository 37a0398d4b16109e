from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStatus(str, enum.Enum):
    OPEN = "OPEN"
    PENDING = "PENDING"
    ESCALATED = "ESCALATED"
    CLOSED = "CLOSED"


class ConversationChannel(str, enum.Enum):
    WIDGET = "WIDGET"
    EMAIL = "EMAIL"
    PHONE = "PHONE"


class ConversationPriority(str, enum.Enum):
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class SenderType(str, enum.Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class SupportConversation(Base):
    __tablename__ = "support_conversation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ConversationStatus.OPEN.value, server_default=ConversationStatus.OPEN.value
    )
    channel: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ConversationChannel.WIDGET.value, server_default=ConversationChannel.WIDGET.value
    )
    priority: Mapped[str] = mapped_column(
        String(8), nullable=False, default=ConversationPriority.P2.value, server_default=ConversationPriority.P2.value
    )
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assignee_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    messages: Mapped[list[SupportConversationMessage]] = relationship(
        "SupportConversationMessage",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SupportConversationMessage.created_at",
    )

    __table_args__ = (
        Index("ix_support_conversation_user_status", "user_id", "status"),
        Index("ix_support_conversation_status", "status", "priority"),
    )


class SupportConversationMessage(Base):
    __tablename__ = "support_conversation_message"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("support_conversation.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_type: Mapped[str] = mapped_column(String(16), nullable=False)
    sender_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    conversation: Mapped[SupportConversation] = relationship("SupportConversation", back_populates="messages")

    __table_args__ = (Index("ix_support_conversation_message_conversation", "conversation_id", "created_at"),)
