from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CHAT_MAX_REQUESTS", "2")
    monkeypatch.setenv("SUPPORT_ESCALATION_GRACE_DELAY_SECONDS", "30")
    get_settings.cache_clear()
    reset_rate_limiter()
    reset_escalation_controller()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    reset_escalation_controller()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_rate_limit_and_escalation_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    conversation = client.post("/api/support/conversations", json={"subject": "Metrics"})
    assert conversation.status_code == 201

    escalated = client.post(f"/api/support/conversations/{conversation.json()['id']}/escalate")
    assert escalated.status_code == 200

    limited = client.post("/api/support/conversations", json={})
    assert limited.status_code == 429

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "rate_limit_rejections_total" in body
    assert "support_escalations_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/support/conversations/{id}/escalate"' in body
    assert 'profile="chat"' in body
    assert 'trigger="operator"' in body


def test_metrics_endpoint_requires_permission(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="someone", roles=["user"])

    response = client.get("/metrics")

    assert response.status_code == 403
