from app.support.api import console_router, router
from app.support.escalation import (
    EscalationController,
    EscalationPolicy,
    EscalationResult,
    EscalationState,
    MessageEvaluation,
    get_escalation_controller,
    reset_escalation_controller,
)
from app.support.models import ConversationStatus, SenderType, SupportConversation, SupportConversationMessage
from app.support.service import ConversationService, SupportActor, conversation_service
from app.support.store import SqlConversationStore

__all__ = [
    "router",
    "console_router",
    "ConversationService",
    "ConversationStatus",
    "EscalationController",
    "EscalationPolicy",
    "EscalationResult",
    "EscalationState",
    "MessageEvaluation",
    "SenderType",
    "SqlConversationStore",
    "SupportActor",
    "SupportConversation",
    "SupportConversationMessage",
    "conversation_service",
    "get_escalation_controller",
    "reset_escalation_controller",
]
