from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.logging import JsonLogFormatter
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.support.escalation import reset_escalation_controller


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("SUPPORT_ESCALATION_GRACE_DELAY_SECONDS", "30")
    get_settings.cache_clear()
    reset_rate_limiter()
    reset_escalation_controller()
    yield
    reset_escalation_controller()
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _member_of(*organizations: str) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": "log-user", "organizations": list(organizations)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_logs_include_correlation_id_for_http(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_TRUST_FORWARDED_FOR", "true")
    get_settings.cache_clear()
    caplog.set_level(logging.INFO)

    path = f"/api/support/conversations/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123", "X-Forwarded-For": "203.0.113.9"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/support/conversations/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "client_ip", None) == "203.0.113.9"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_rejections_are_logged_as_warnings(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CHAT_MAX_REQUESTS", "1")
    get_settings.cache_clear()
    reset_rate_limiter()
    caplog.set_level(logging.INFO)

    headers = {"X-Organization-Id": "org-logs", **_member_of("org-logs")}
    client.post("/api/support/conversations", json={}, headers=headers)
    limited = client.post("/api/support/conversations", json={}, headers=headers)
    assert limited.status_code == 429

    rejected = [record for record in caplog.records if record.name == "app.ratelimit"]
    assert rejected
    record = rejected[-1]
    assert record.levelno == logging.WARNING
    assert record.getMessage() == "rate_limit.rejected"
    assert getattr(record, "profile", None) == "chat"
    assert getattr(record, "dimension", None) == "ip"
    assert getattr(record, "organization_id", None) == "org-logs"


def test_escalation_commit_is_logged_with_conversation_context(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    conversation_id = client.post("/api/support/conversations", json={}).json()["id"]
    client.post(f"/api/support/conversations/{conversation_id}/escalate", headers={"X-Correlation-Id": "esc-log-1"})

    committed = [
        record
        for record in caplog.records
        if record.name == "app.support.escalation" and record.getMessage() == "support.escalation.committed"
    ]
    assert committed
    assert getattr(committed[-1], "conversation_id", None) == conversation_id
    assert getattr(committed[-1], "trigger", None) == "operator"
    assert getattr(committed[-1], "persisted", None) is True
    assert getattr(committed[-1], "correlation_id", None) == "esc-log-1"


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.ratelimit",
            "levelno": logging.WARNING,
            "levelname": "WARNING",
            "msg": "rate_limit.rejected",
            "profile": "auth",
            "retry_after": 12,
            "password": "hunter2",
            "correlation_id": "fmt-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "rate_limit.rejected"
    assert payload["level"] == "WARNING"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"profile": "auth", "retry_after": 12}
