from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, select
from sqlalchemy.orm import Session, selectinload

from app.support.models import (
    ConversationPriority,
    ConversationStatus,
    SenderType,
    SupportConversation,
    SupportConversationMessage,
    utcnow,
)
from app.support.schemas import ConversationCreate, ConversationDetail, ConversationRead, MessageRead


@dataclass
class SupportActor:
    user_id: str
    organization_id: str | None = None
    can_manage_console: bool = False
    correlation_id: str | None = None


class ConversationService:
    """System of record for support conversations and their transcripts."""

    def create_conversation(self, session: Session, actor: SupportActor, dto: ConversationCreate) -> ConversationRead:
        conversation = SupportConversation(
            user_id=actor.user_id,
            organization_id=actor.organization_id,
            status=ConversationStatus.OPEN.value,
            channel=dto.channel,
            priority=ConversationPriority.P2.value,
            subject=dto.subject,
        )
        session.add(conversation)
        session.commit()
        session.refresh(conversation)
        return ConversationRead.model_validate(conversation)

    def list_conversations(
        self,
        session: Session,
        *,
        user_id: str | None = None,
        status_filter: str | None = None,
    ) -> list[ConversationRead]:
        stmt: Select[tuple[SupportConversation]] = select(SupportConversation)
        if user_id is not None:
            stmt = stmt.where(SupportConversation.user_id == user_id)
        if status_filter:
            stmt = stmt.where(SupportConversation.status == self._parse_status(status_filter).value)
        rows = session.scalars(stmt.order_by(SupportConversation.created_at.desc())).all()
        return [ConversationRead.model_validate(row) for row in rows]

    def get_conversation(self, session: Session, actor: SupportActor, conversation_id: uuid.UUID) -> ConversationDetail:
        conversation = session.scalar(
            select(SupportConversation)
            .options(selectinload(SupportConversation.messages))
            .where(SupportConversation.id == conversation_id)
        )
        if conversation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
        self._ensure_access(actor, conversation)
        return ConversationDetail.model_validate(conversation)

    def add_user_message(
        self,
        session: Session,
        actor: SupportActor,
        conversation_id: uuid.UUID,
        content: str,
    ) -> MessageRead:
        conversation = self._get_visible(session, actor, conversation_id)
        if conversation.status == ConversationStatus.CLOSED.value:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Conversation is closed")

        message = SupportConversationMessage(
            conversation_id=conversation.id,
            sender_type=SenderType.USER.value,
            sender_id=actor.user_id,
            content=content,
        )
        session.add(message)
        conversation.updated_at = utcnow()
        session.commit()
        session.refresh(message)
        return MessageRead.model_validate(message)

    def get_status(self, session: Session, conversation_id: uuid.UUID) -> ConversationStatus | None:
        value = session.scalar(select(SupportConversation.status).where(SupportConversation.id == conversation_id))
        if value is None:
            return None
        return ConversationStatus(value)

    def mark_escalated(self, session: Session, conversation_id: uuid.UUID, escalated_at: datetime) -> ConversationRead:
        conversation = self._get(session, conversation_id)
        if conversation.status == ConversationStatus.CLOSED.value:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Conversation is closed")

        conversation.status = ConversationStatus.ESCALATED.value
        conversation.priority = ConversationPriority.P1.value
        if conversation.escalated_at is None:
            conversation.escalated_at = escalated_at
        session.commit()
        session.refresh(conversation)
        return ConversationRead.model_validate(conversation)

    def append_message(
        self,
        session: Session,
        conversation_id: uuid.UUID,
        *,
        sender_type: SenderType,
        content: str,
        metadata: dict[str, Any] | None = None,
        sender_id: str | None = None,
    ) -> MessageRead:
        conversation = self._get(session, conversation_id)
        message = SupportConversationMessage(
            conversation_id=conversation.id,
            sender_type=sender_type.value,
            sender_id=sender_id,
            content=content,
            metadata_json=metadata,
        )
        session.add(message)
        session.commit()
        session.refresh(message)
        return MessageRead.model_validate(message)

    def accept(self, session: Session, conversation_id: uuid.UUID, operator_id: str) -> ConversationRead:
        conversation = self._get_open(session, conversation_id)
        conversation.assignee_id = operator_id
        session.commit()
        session.refresh(conversation)
        return ConversationRead.model_validate(conversation)

    def transfer(self, session: Session, conversation_id: uuid.UUID, agent_id: str) -> ConversationRead:
        conversation = self._get_open(session, conversation_id)
        if conversation.assignee_id == agent_id:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Conversation already assigned to this agent")
        conversation.assignee_id = agent_id
        session.commit()
        session.refresh(conversation)
        return ConversationRead.model_validate(conversation)

    def close(self, session: Session, conversation_id: uuid.UUID) -> ConversationRead:
        conversation = self._get(session, conversation_id)
        if conversation.status != ConversationStatus.CLOSED.value:
            conversation.status = ConversationStatus.CLOSED.value
            conversation.closed_at = utcnow()
            session.commit()
            session.refresh(conversation)
        return ConversationRead.model_validate(conversation)

    def _get(self, session: Session, conversation_id: uuid.UUID) -> SupportConversation:
        conversation = session.get(SupportConversation, conversation_id)
        if conversation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
        return conversation

    def _get_open(self, session: Session, conversation_id: uuid.UUID) -> SupportConversation:
        conversation = self._get(session, conversation_id)
        if conversation.status == ConversationStatus.CLOSED.value:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Conversation is closed")
        return conversation

    def _get_visible(self, session: Session, actor: SupportActor, conversation_id: uuid.UUID) -> SupportConversation:
        conversation = self._get(session, conversation_id)
        self._ensure_access(actor, conversation)
        return conversation

    @staticmethod
    def _ensure_access(actor: SupportActor, conversation: SupportConversation) -> None:
        if actor.can_manage_console:
            return
        if conversation.user_id != actor.user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    @staticmethod
    def _parse_status(value: str) -> ConversationStatus:
        try:
            return ConversationStatus(value.upper())
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Unknown conversation status '{value}'",
            ) from None


conversation_service = ConversationService()
