from __future__ import annotations

import uuid
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.support.models import ConversationStatus, SenderType
from app.support.service import ConversationService, conversation_service


SessionScope = Callable[[], AbstractContextManager[Session]]


class SqlConversationStore:
    """Exposes :class:`ConversationService` to the escalation controller.

    Each call opens its own session and runs in the thread pool, so the delayed
    escalation can commit outside of any request.
    """

    def __init__(self, session_scope: SessionScope, service: ConversationService = conversation_service) -> None:
        self._session_scope = session_scope
        self._service = service

    async def get_status(self, conversation_id: uuid.UUID) -> ConversationStatus | None:
        return await run_in_threadpool(self._get_status, conversation_id)

    async def set_escalated(self, conversation_id: uuid.UUID, escalated_at: datetime) -> None:
        await run_in_threadpool(self._set_escalated, conversation_id, escalated_at)

    async def append_message(
        self,
        conversation_id: uuid.UUID,
        *,
        sender_type: SenderType,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await run_in_threadpool(self._append_message, conversation_id, sender_type, content, metadata)

    def _get_status(self, conversation_id: uuid.UUID) -> ConversationStatus | None:
        with self._session_scope() as session:
            return self._service.get_status(session, conversation_id)

    def _set_escalated(self, conversation_id: uuid.UUID, escalated_at: datetime) -> None:
        with self._session_scope() as session:
            self._service.mark_escalated(session, conversation_id, escalated_at)

    def _append_message(
        self,
        conversation_id: uuid.UUID,
        sender_type: SenderType,
        content: str,
        metadata: dict[str, Any] | None,
    ) -> None:
        with self._session_scope() as session:
            self._service.append_message(
                session,
                conversation_id,
                sender_type=sender_type,
                content=content,
                metadata=metadata,
            )
