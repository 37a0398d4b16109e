"""Hand-off of support chat conversations to a human operator.

Every inbound end-user message is offered to :class:`EscalationController`.
A message escalates the conversation when it contains a term from the
escalation vocabulary or when the user has sent enough messages. The commit is
delayed by a short grace period so a flurry of triggering messages produces a
single hand-off, and it runs at most once per conversation: the timer, a
second keyword message and the manual "talk to a human" button all funnel into
:meth:`EscalationController.escalate_now`, which is guarded by a per
conversation in-flight flag.

Each new triggering message while the timer is pending restarts the grace
period, so a user who keeps typing faster than the delay postpones the
automatic hand-off until they pause (the chat rate limit bounds how long).
The manual button is never delayed.

All state lives in this process and is keyed by conversation id.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Protocol

from app.core.config import DEFAULT_ESCALATION_KEYWORDS, Settings, get_settings
from app.core.events import event_bus
from app.metrics import observe_escalation
from app.otel import get_tracer
from app.support.models import ConversationStatus, SenderType, utcnow


logger = logging.getLogger("app.support.escalation")
tracer = get_tracer("app.support.escalation")

TRIGGER_KEYWORD = "keyword"
TRIGGER_TURN_THRESHOLD = "turn_threshold"
TRIGGER_TIMER = "timer"
TRIGGER_MANUAL = "manual"

ESCALATED_EVENT = "support.conversation.escalated"


class EscalationState(str, enum.Enum):
    NORMAL = "NORMAL"
    ESCALATION_PENDING = "ESCALATION_PENDING"
    ESCALATED = "ESCALATED"


class ConversationStatusStore(Protocol):
    async def get_status(self, conversation_id: uuid.UUID) -> ConversationStatus | None: ...

    async def set_escalated(self, conversation_id: uuid.UUID, escalated_at: datetime) -> None: ...

    async def append_message(
        self,
        conversation_id: uuid.UUID,
        *,
        sender_type: SenderType,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


@dataclass(frozen=True)
class EscalationPolicy:
    keywords: tuple[str, ...] = tuple(DEFAULT_ESCALATION_KEYWORDS)
    turn_threshold: int = 6
    offer_threshold: int = 4
    grace_delay_seconds: float = 1.0
    response_minutes: int = 15

    def __post_init__(self) -> None:
        if self.turn_threshold < 1 or self.offer_threshold < 1:
            raise ValueError("escalation thresholds must be at least 1")
        if self.grace_delay_seconds < 0:
            raise ValueError("grace_delay_seconds must not be negative")
        object.__setattr__(self, "keywords", tuple(keyword.lower() for keyword in self.keywords if keyword))

    @classmethod
    def from_settings(cls, settings: Settings) -> EscalationPolicy:
        return cls(
            keywords=tuple(settings.support_escalation_keywords),
            turn_threshold=settings.support_escalation_turn_threshold,
            offer_threshold=settings.support_escalation_offer_threshold,
            grace_delay_seconds=settings.support_escalation_grace_delay_seconds,
            response_minutes=settings.support_escalation_response_minutes,
        )

    def matched_trigger(self, text: str, user_turn_count: int) -> str | None:
        lowered = text.lower()
        if any(keyword in lowered for keyword in self.keywords):
            return TRIGGER_KEYWORD
        if user_turn_count >= self.turn_threshold:
            return TRIGGER_TURN_THRESHOLD
        return None

    def offers_manual_escalation(self, user_turn_count: int) -> bool:
        return user_turn_count >= self.offer_threshold

    def handoff_message(self) -> str:
        return (
            "Your conversation has been escalated to our specialist team. "
            f"A manager will contact you within {self.response_minutes} minutes "
            "at the number associated with your account."
        )


@dataclass
class _ConversationEscalation:
    user_turn_count: int = 0
    in_flight: bool = False
    escalated: bool = False
    escalated_at: datetime | None = None
    pending: asyncio.Task[None] | None = None

    @property
    def state(self) -> EscalationState:
        if self.escalated:
            return EscalationState.ESCALATED
        if self.in_flight or (self.pending is not None and not self.pending.done()):
            return EscalationState.ESCALATION_PENDING
        return EscalationState.NORMAL


@dataclass(frozen=True)
class MessageEvaluation:
    escalation_scheduled: bool
    user_turn_count: int
    manual_escalation_available: bool
    state: EscalationState


@dataclass(frozen=True)
class EscalationResult:
    escalated: bool
    persisted: bool
    state: EscalationState
    message: str | None = None


class EscalationController:
    def __init__(
        self,
        store: ConversationStatusStore | None = None,
        policy: EscalationPolicy | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self.policy = policy or EscalationPolicy()
        self._clock = clock
        self._states: dict[uuid.UUID, _ConversationEscalation] = {}

    def bind_store(self, store: ConversationStatusStore) -> None:
        self._store = store

    def state_of(self, conversation_id: uuid.UUID) -> EscalationState:
        state = self._states.get(conversation_id)
        return state.state if state is not None else EscalationState.NORMAL

    def user_turn_count(self, conversation_id: uuid.UUID) -> int:
        state = self._states.get(conversation_id)
        return state.user_turn_count if state is not None else 0

    def escalated_at(self, conversation_id: uuid.UUID) -> datetime | None:
        state = self._states.get(conversation_id)
        return state.escalated_at if state is not None else None

    async def on_user_message(self, conversation_id: uuid.UUID, text: str) -> MessageEvaluation:
        store = self._require_store()
        state = self._state(conversation_id)
        state.user_turn_count += 1
        turn_count = state.user_turn_count

        if not state.escalated:
            status = await store.get_status(conversation_id)
            if status is ConversationStatus.ESCALATED:
                state.escalated = True
            elif status is ConversationStatus.CLOSED:
                return self._evaluation(state, scheduled=False)

        trigger = None
        if not state.escalated and not state.in_flight:
            trigger = self.policy.matched_trigger(text, turn_count)
        if trigger is None:
            return self._evaluation(state, scheduled=False)

        self._schedule(conversation_id, state)
        logger.info(
            "support.escalation.scheduled",
            extra={"conversation_id": str(conversation_id), "trigger": trigger, "turn_count": turn_count},
        )
        return self._evaluation(state, scheduled=True)

    async def escalate_now(self, conversation_id: uuid.UUID, trigger: str = TRIGGER_MANUAL) -> EscalationResult:
        store = self._require_store()
        state = self._state(conversation_id)
        # Check and set with no await in between; a racing trigger sees the flag.
        if state.escalated or state.in_flight:
            return EscalationResult(escalated=False, persisted=False, state=state.state)
        state.in_flight = True
        self._cancel_pending(state)
        try:
            result = await self._commit(conversation_id, state, store, trigger)
        finally:
            state.in_flight = False
        return replace(result, state=state.state)

    def forget(self, conversation_id: uuid.UUID) -> None:
        state = self._states.pop(conversation_id, None)
        if state is not None:
            self._cancel_pending(state)

    async def shutdown(self) -> None:
        pending = [state.pending for state in self._states.values() if state.pending is not None]
        for state in self._states.values():
            self._cancel_pending(state)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _commit(
        self,
        conversation_id: uuid.UUID,
        state: _ConversationEscalation,
        store: ConversationStatusStore,
        trigger: str,
    ) -> EscalationResult:
        log_extra = {"conversation_id": str(conversation_id), "trigger": trigger}
        try:
            status = await store.get_status(conversation_id)
        except Exception as exc:
            logger.warning("support.escalation.status_unavailable", extra={**log_extra, "error": str(exc)})
            status = None

        if status is ConversationStatus.ESCALATED:
            state.escalated = True
            return EscalationResult(escalated=False, persisted=False, state=state.state)
        if status is ConversationStatus.CLOSED:
            return EscalationResult(escalated=False, persisted=False, state=state.state)

        escalated_at = self._clock()
        message = self.policy.handoff_message()
        persisted = True
        with tracer.start_as_current_span("support.escalation.commit") as span:
            span.set_attribute("conversation_id", str(conversation_id))
            span.set_attribute("trigger", trigger)
            try:
                await store.set_escalated(conversation_id, escalated_at)
            except Exception as exc:
                persisted = False
                logger.exception("support.escalation.persist_failed", extra={**log_extra, "error": str(exc)})

            # The user sees the hand-off even when the system of record was not updated.
            try:
                await store.append_message(
                    conversation_id,
                    sender_type=SenderType.SYSTEM,
                    content=message,
                    metadata={"escalated": True, "trigger": trigger},
                )
            except Exception as exc:
                logger.exception("support.escalation.transcript_failed", extra={**log_extra, "error": str(exc)})
            span.set_attribute("persisted", persisted)

        if persisted:
            state.escalated = True
            state.escalated_at = escalated_at
            event_bus.publish(
                ESCALATED_EVENT,
                {
                    "conversation_id": str(conversation_id),
                    "escalated_at": escalated_at.isoformat(),
                    "trigger": trigger,
                    "user_turn_count": state.user_turn_count,
                },
            )

        observe_escalation(trigger, "committed" if persisted else "persist_failed")
        logger.info("support.escalation.committed", extra={**log_extra, "persisted": persisted})
        return EscalationResult(escalated=True, persisted=persisted, state=state.state, message=message)

    def _schedule(self, conversation_id: uuid.UUID, state: _ConversationEscalation) -> None:
        self._cancel_pending(state)
        state.pending = asyncio.get_running_loop().create_task(
            self._fire_after_grace(conversation_id, state),
            name=f"support-escalation-{conversation_id}",
        )

    async def _fire_after_grace(self, conversation_id: uuid.UUID, state: _ConversationEscalation) -> None:
        await asyncio.sleep(self.policy.grace_delay_seconds)
        if state.pending is asyncio.current_task():
            state.pending = None
        try:
            await self.escalate_now(conversation_id, trigger=TRIGGER_TIMER)
        except Exception as exc:
            logger.exception(
                "support.escalation.timer_failed",
                extra={"conversation_id": str(conversation_id), "trigger": TRIGGER_TIMER, "error": str(exc)},
            )

    @staticmethod
    def _cancel_pending(state: _ConversationEscalation) -> None:
        pending = state.pending
        state.pending = None
        if pending is not None and not pending.done():
            pending.cancel()

    def _state(self, conversation_id: uuid.UUID) -> _ConversationEscalation:
        state = self._states.get(conversation_id)
        if state is None:
            state = _ConversationEscalation()
            self._states[conversation_id] = state
        return state

    def _evaluation(self, state: _ConversationEscalation, *, scheduled: bool) -> MessageEvaluation:
        return MessageEvaluation(
            escalation_scheduled=scheduled,
            user_turn_count=state.user_turn_count,
            manual_escalation_available=(not state.escalated and self.policy.offers_manual_escalation(state.user_turn_count)),
            state=state.state,
        )

    def _require_store(self) -> ConversationStatusStore:
        if self._store is None:
            raise RuntimeError("EscalationController has no conversation store bound")
        return self._store


_controller: EscalationController | None = None


def get_escalation_controller() -> EscalationController:
    global _controller
    if _controller is None:
        _controller = EscalationController(policy=EscalationPolicy.from_settings(get_settings()))
    return _controller


def reset_escalation_controller() -> None:
    global _controller
    _controller = None
