from collections.abc import Iterator
from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.orm import Session

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.database import get_db, session_scope
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.rate_limit import RateLimitMiddleware, get_registry
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.ratelimit import RateLimitSweeper
from app.support.escalation import ESCALATED_EVENT, get_escalation_controller
from app.support.store import SqlConversationStore


configure_logging()
logger = logging.getLogger("app.lifecycle")


@contextmanager
def _support_session_scope() -> Iterator[Session]:
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        with session_scope() as session:
            yield session
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_conversation_escalated(event: InternalEvent) -> None:
    logger.info(
        "support.conversation.escalated",
        extra={"conversation_id": event.payload.get("conversation_id"), "trigger": event.payload.get("trigger")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    sweeper = RateLimitSweeper(lambda: get_registry().sweep(), settings.rate_limit_sweep_interval_seconds)
    sweeper.start()

    controller = get_escalation_controller()
    controller.bind_store(SqlConversationStore(_support_session_scope))
    event_bus.subscribe(ESCALATED_EVENT, _on_conversation_escalated)
    logger.info("system.started")
    try:
        yield
    finally:
        await controller.shutdown()
        sweeper.stop()
        event_bus.unsubscribe(ESCALATED_EVENT, _on_conversation_escalated)


app = FastAPI(title="Marketing CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)

if get_settings().otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
