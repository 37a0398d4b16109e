from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.requests import Request

from app.core.config import get_settings
from app.core.context import UNKNOWN_CLIENT_IP, resolve_client_ip
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter, resolve_profile
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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CHAT_MAX_REQUESTS", "3")
    monkeypatch.setenv("RATE_LIMIT_AUTH_MAX_REQUESTS", "2")
    monkeypatch.setenv("RATE_LIMIT_TRUST_FORWARDED_FOR", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    reset_escalation_controller()
    yield
    reset_rate_limiter()
    reset_escalation_controller()
    get_settings.cache_clear()


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
    token = jwt.encode({"sub": "member", "organizations": list(organizations)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def _request(headers: dict[str, str], client: tuple[str, int] | None = ("10.0.0.5", 50000)) -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": [(name.lower().encode("latin-1"), value.encode("latin-1")) for name, value in headers.items()],
            "client": client,
        }
    )


def test_chat_endpoints_are_rate_limited_per_ip(client: TestClient) -> None:
    responses = [
        client.post("/api/support/conversations", json={"subject": f"Help {index}"}, headers={"X-Forwarded-For": "203.0.113.7"})
        for index in range(5)
    ]

    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    limited = [response for response in responses if response.status_code == 429]
    assert len(limited) == 2

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests from this IP address"
    assert body["details"]["dimension"] == "ip"
    assert body["details"]["profile"] == "chat"
    assert body["correlation_id"] is not None
    assert int(first_limited.headers["Retry-After"]) >= 1
    assert first_limited.headers["x-correlation-id"] == body["correlation_id"]


def test_other_ips_keep_their_own_budget(client: TestClient) -> None:
    for _ in range(3):
        client.post("/api/support/conversations", json={}, headers={"X-Forwarded-For": "203.0.113.7"})
    assert client.post("/api/support/conversations", json={}, headers={"X-Forwarded-For": "203.0.113.7"}).status_code == 429

    response = client.post("/api/support/conversations", json={}, headers={"X-Forwarded-For": "198.51.100.20"})
    assert response.status_code == 201


def test_rotating_forwarded_for_does_not_bypass_ip_limit(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_TRUST_FORWARDED_FOR", "false")
    get_settings.cache_clear()

    statuses = [
        client.post("/api/auth/login", json={}, headers={"X-Forwarded-For": f"192.0.2.{index}"}).status_code
        for index in range(5)
    ]

    assert statuses == [404, 404, 429, 429, 429]


def test_only_the_proxy_appended_hop_is_trusted(client: TestClient) -> None:
    statuses = [
        client.post("/api/auth/login", json={}, headers={"X-Forwarded-For": f"192.0.2.{index}, 203.0.113.50"}).status_code
        for index in range(4)
    ]

    assert statuses == [404, 404, 429, 429]


def test_resolve_client_ip_uses_peer_unless_forwarded_for_is_trusted(monkeypatch: pytest.MonkeyPatch) -> None:
    forwarded = {"X-Forwarded-For": "192.0.2.1, 203.0.113.50"}

    monkeypatch.setenv("RATE_LIMIT_TRUST_FORWARDED_FOR", "false")
    get_settings.cache_clear()
    assert resolve_client_ip(_request(forwarded)) == "10.0.0.5"

    monkeypatch.setenv("RATE_LIMIT_TRUST_FORWARDED_FOR", "true")
    get_settings.cache_clear()
    assert resolve_client_ip(_request(forwarded)) == "203.0.113.50"
    assert resolve_client_ip(_request({"X-Forwarded-For": " , "})) == "10.0.0.5"


def test_resolve_client_ip_falls_back_to_unknown() -> None:
    assert resolve_client_ip(_request({}, client=None)) == UNKNOWN_CLIENT_IP


def test_spoofed_organization_header_does_not_consume_tenant_budget(client: TestClient) -> None:
    spoofed = [
        client.post(
            "/api/support/conversations",
            json={},
            headers={"X-Forwarded-For": f"198.51.100.{index}", "X-Organization-Id": "org-victim", **_member_of("org-other")},
        ).status_code
        for index in range(5)
    ]
    assert spoofed == [201] * 5

    victim = _member_of("org-victim")
    statuses = [
        client.post(
            "/api/support/conversations",
            json={},
            headers={"X-Forwarded-For": f"198.51.100.{50 + index}", "X-Organization-Id": "org-victim", **victim},
        ).status_code
        for index in range(3)
    ]
    assert statuses == [201, 201, 201]


def test_tenant_budget_is_shared_across_ips(client: TestClient) -> None:
    tenant_member = _member_of("org-1", "org-2")
    statuses = [
        client.post(
            "/api/support/conversations",
            json={},
            headers={"X-Forwarded-For": f"198.51.100.{index}", "X-Organization-Id": "org-1", **tenant_member},
        ).status_code
        for index in range(4)
    ]
    assert statuses == [201, 201, 201, 429]

    limited = client.post(
        "/api/support/conversations",
        json={},
        headers={"X-Forwarded-For": "198.51.100.99", "X-Organization-Id": "org-1", **tenant_member},
    )
    assert limited.status_code == 429
    body = limited.json()
    assert body["message"] == "Too many requests for this organization"
    assert body["details"]["dimension"] == "tenant"

    other_tenant = client.post(
        "/api/support/conversations",
        json={},
        headers={"X-Forwarded-For": "198.51.100.100", "X-Organization-Id": "org-2", **tenant_member},
    )
    assert other_tenant.status_code == 201


def test_profile_is_applied_before_routing(client: TestClient) -> None:
    statuses = [client.post("/api/auth/login", json={}).status_code for _ in range(3)]

    assert statuses[:2] == [404, 404]
    assert statuses[2] == 429


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/support/conversations", json={"subject": "Readable"})
    assert create.status_code == 201

    responses = [client.get("/api/support/conversations") for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)


def test_disabled_rate_limiter_lets_everything_through(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()

    statuses = [client.post("/api/support/conversations", json={}).status_code for _ in range(6)]
    assert statuses == [201] * 6


@pytest.mark.parametrize(
    ("method", "path", "expected"),
    [
        ("POST", "/api/auth/login", "auth"),
        ("POST", "/api/auth/register", "auth"),
        ("POST", "/api/upload", "upload"),
        ("POST", "/api/uploads/avatar", "upload"),
        ("POST", "/api/social/posts/42/publish", "publish"),
        ("POST", "/api/social/posts/42/schedule", "publish"),
        ("POST", "/api/marketplace/checkout", "checkout"),
        ("POST", "/api/support/conversations/abc/messages", "chat"),
        ("GET", "/api/support/conversations", None),
        ("POST", "/api/auth/logout", None),
        ("POST", "/health", None),
    ],
)
def test_resolve_profile(method: str, path: str, expected: str | None) -> None:
    assert resolve_profile(method, path) == expected
