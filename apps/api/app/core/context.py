from __future__ import annotations

import uuid
from dataclasses import dataclass

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, reset_organization_id, set_correlation_id, set_organization_id
from app.core.auth import decode_bearer_token, token_organizations
from app.core.config import get_settings


UNKNOWN_CLIENT_IP = "unknown"


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    organization_id: str | None
    client_ip: str


def resolve_client_ip(request: Request) -> str:
    if get_settings().rate_limit_trust_forwarded_for:
        # Only the last hop was written by our proxy; earlier ones are client supplied.
        hops = [hop.strip() for hop in request.headers.get("x-forwarded-for", "").split(",") if hop.strip()]
        if hops:
            return hops[-1]
    if request.client is not None and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT_IP


def resolve_organization_id(request: Request) -> str | None:
    """Tenant for the request, taken from the bearer token.

    ``X-Organization-Id`` selects among the organizations the token lists and is
    ignored for anyone who is not a member. Without the header a token carrying
    a single organization (or an ``org_id`` claim) selects that one.
    """
    payload = decode_bearer_token(request)
    if payload is None:
        return None
    organizations = token_organizations(payload)
    requested = request.headers.get("x-organization-id")
    if requested:
        return requested if requested in organizations else None
    if payload.get("org_id") or len(organizations) == 1:
        return organizations[0]
    return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Stamps every request with a correlation id and tenant context.

    The correlation id is taken from ``X-Correlation-Id`` when the caller sends
    one and generated otherwise; it is echoed back on the response and bound to
    a context variable so log records pick it up. The organization is only bound
    once the bearer token vouches for it.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        organization_id = resolve_organization_id(request)
        request.state.correlation_id = correlation_id
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            user_id=None,
            organization_id=organization_id,
            client_ip=resolve_client_ip(request),
        )

        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if organization_id:
                span.set_attribute("organization_id", organization_id)

        correlation_token = set_correlation_id(correlation_id)
        organization_token = set_organization_id(organization_id)
        try:
            response = await call_next(request)
        finally:
            reset_organization_id(organization_token)
            reset_correlation_id(correlation_token)

        response.headers["x-correlation-id"] = correlation_id
        response.headers["x-request-id"] = correlation_id
        return response
