from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


ConversationStatusValue = Literal["OPEN", "PENDING", "ESCALATED", "CLOSED"]
ConversationChannelValue = Literal["WIDGET", "EMAIL", "PHONE"]
EscalationStateValue = Literal["NORMAL", "ESCALATION_PENDING", "ESCALATED"]


class ConversationCreate(BaseModel):
    subject: str | None = Field(default=None, max_length=255)
    channel: ConversationChannelValue = "WIDGET"


class ConversationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    organization_id: str | None
    status: ConversationStatusValue
    channel: ConversationChannelValue
    priority: str
    subject: str | None
    assignee_id: str | None
    escalated_at: datetime | None
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class MessageCreate(BaseModel):
    content: str = Field(min_length=1, max_length=4000)


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    conversation_id: UUID
    sender_type: str
    sender_id: str | None
    content: str
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class ConversationDetail(ConversationRead):
    messages: list[MessageRead] = Field(default_factory=list)


class EscalationEvaluationRead(BaseModel):
    escalation_scheduled: bool
    user_turn_count: int
    manual_escalation_available: bool
    state: EscalationStateValue


class MessagePostResponse(BaseModel):
    message: MessageRead
    escalation: EscalationEvaluationRead


class EscalateRequest(BaseModel):
    channel: Literal["operator", "callback"] = "operator"


class EscalationRead(BaseModel):
    escalated: bool
    persisted: bool
    state: EscalationStateValue
    message: str | None = None


class TransferRequest(BaseModel):
    agent_id: str = Field(min_length=1)
