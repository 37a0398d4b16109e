from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api.errors import error_response, resolve_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.rbac import require_permissions
from app.support.escalation import EscalationController, get_escalation_controller
from app.support.schemas import (
    ConversationCreate,
    ConversationDetail,
    ConversationRead,
    EscalateRequest,
    EscalationEvaluationRead,
    EscalationRead,
    MessageCreate,
    MessagePostResponse,
    TransferRequest,
)
from app.support.service import SupportActor, conversation_service


CONSOLE_PERMISSION = "support.console.manage"

router = APIRouter(prefix="/api/support/conversations", tags=["support.conversations"])
console_router = APIRouter(prefix="/api/support/console", tags=["support.console"])


def get_support_actor(request: Request, auth_user: AuthUser = Depends(get_current_user)) -> SupportActor:
    context = getattr(request.state, "context", None)
    return SupportActor(
        user_id=auth_user.sub,
        organization_id=getattr(context, "organization_id", None),
        can_manage_console=auth_user.is_admin or CONSOLE_PERMISSION in auth_user.roles,
        correlation_id=resolve_correlation_id(request),
    )


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(request, status_code=exc.status_code, code=code, message=str(exc.detail), details=exc.detail)


@router.post("", response_model=ConversationRead, status_code=status.HTTP_201_CREATED)
def create_conversation(
    request: Request,
    dto: ConversationCreate,
    db: Session = Depends(get_db),
    actor: SupportActor = Depends(get_support_actor),
) -> ConversationRead | JSONResponse:
    try:
        return conversation_service.create_conversation(db, actor, dto)
    except HTTPException as exc:
        return _failed(request, exc, "support_conversation_create_failed")


@router.get("", response_model=list[ConversationRead])
def list_conversations(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    actor: SupportActor = Depends(get_support_actor),
) -> list[ConversationRead] | JSONResponse:
    try:
        return conversation_service.list_conversations(db, user_id=actor.user_id, status_filter=status_filter)
    except HTTPException as exc:
        return _failed(request, exc, "support_conversation_list_failed")


@router.get("/{conversation_id}", response_model=ConversationDetail)
def get_conversation(
    request: Request,
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: SupportActor = Depends(get_support_actor),
) -> ConversationDetail | JSONResponse:
    try:
        return conversation_service.get_conversation(db, actor, conversation_id)
    except HTTPException as exc:
        return _failed(request, exc, "support_conversation_get_failed")


@router.post("/{conversation_id}/messages", response_model=MessagePostResponse, status_code=status.HTTP_201_CREATED)
async def post_message(
    request: Request,
    conversation_id: uuid.UUID,
    dto: MessageCreate,
    db: Session = Depends(get_db),
    actor: SupportActor = Depends(get_support_actor),
    controller: EscalationController = Depends(get_escalation_controller),
) -> MessagePostResponse | JSONResponse:
    try:
        message = await run_in_threadpool(conversation_service.add_user_message, db, actor, conversation_id, dto.content)
    except HTTPException as exc:
        return _failed(request, exc, "support_message_create_failed")

    evaluation = await controller.on_user_message(conversation_id, dto.content)
    return MessagePostResponse(
        message=message,
        escalation=EscalationEvaluationRead(
            escalation_scheduled=evaluation.escalation_scheduled,
            user_turn_count=evaluation.user_turn_count,
            manual_escalation_available=evaluation.manual_escalation_available,
            state=evaluation.state.value,
        ),
    )


@router.post("/{conversation_id}/escalate", response_model=EscalationRead)
async def escalate_conversation(
    request: Request,
    conversation_id: uuid.UUID,
    dto: EscalateRequest | None = None,
    db: Session = Depends(get_db),
    actor: SupportActor = Depends(get_support_actor),
    controller: EscalationController = Depends(get_escalation_controller),
) -> EscalationRead | JSONResponse:
    try:
        await run_in_threadpool(conversation_service.get_conversation, db, actor, conversation_id)
    except HTTPException as exc:
        return _failed(request, exc, "support_conversation_escalate_failed")

    channel = dto.channel if dto is not None else "operator"
    result = await controller.escalate_now(conversation_id, trigger=channel)
    return EscalationRead(
        escalated=result.escalated,
        persisted=result.persisted,
        state=result.state.value,
        message=result.message,
    )


@console_router.get("/conversations", response_model=list[ConversationRead])
def list_console_conversations(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(CONSOLE_PERMISSION)),
) -> list[ConversationRead] | JSONResponse:
    try:
        return conversation_service.list_conversations(db, status_filter=status_filter)
    except HTTPException as exc:
        return _failed(request, exc, "support_console_list_failed")


@console_router.post("/conversations/{conversation_id}/accept", response_model=ConversationRead)
def accept_conversation(
    request: Request,
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
    operator: AuthUser = Depends(require_permissions(CONSOLE_PERMISSION)),
) -> ConversationRead | JSONResponse:
    try:
        return conversation_service.accept(db, conversation_id, operator.sub)
    except HTTPException as exc:
        return _failed(request, exc, "support_console_accept_failed")


@console_router.post("/conversations/{conversation_id}/transfer", response_model=ConversationRead)
async def transfer_conversation(
    request: Request,
    conversation_id: uuid.UUID,
    dto: TransferRequest,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(CONSOLE_PERMISSION)),
    controller: EscalationController = Depends(get_escalation_controller),
) -> ConversationRead | JSONResponse:
    try:
        transferred = await run_in_threadpool(conversation_service.transfer, db, conversation_id, dto.agent_id)
    except HTTPException as exc:
        return _failed(request, exc, "support_console_transfer_failed")

    # The new owner starts from the persisted status; turn counting restarts.
    controller.forget(conversation_id)
    return transferred


@console_router.post("/conversations/{conversation_id}/close", response_model=ConversationRead)
async def close_conversation(
    request: Request,
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(CONSOLE_PERMISSION)),
    controller: EscalationController = Depends(get_escalation_controller),
) -> ConversationRead | JSONResponse:
    try:
        closed = await run_in_threadpool(conversation_service.close, db, conversation_id)
    except HTTPException as exc:
        return _failed(request, exc, "support_console_close_failed")

    controller.forget(conversation_id)
    return closed
