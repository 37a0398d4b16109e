from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.api.errors import error_response
from app.core.config import get_settings
from app.core.context import resolve_client_ip, resolve_organization_id
from app.metrics import observe_rate_limit_rejection
from app.ratelimit import (
    DIMENSION_IP,
    PROFILE_AUTH,
    PROFILE_CHAT,
    PROFILE_CHECKOUT,
    PROFILE_PUBLISH,
    PROFILE_UPLOAD,
    RateLimitRegistry,
    get_rate_limit_registry,
    reset_rate_limit_registry,
)


logger = logging.getLogger("app.ratelimit")


@dataclass(frozen=True)
class RateLimitRule:
    methods: frozenset[str]
    pattern: re.Pattern[str]
    profile: str

    def matches(self, method: str, path: str) -> bool:
        return method in self.methods and self.pattern.match(path) is not None


_POST = frozenset({"POST"})

RATE_LIMIT_RULES: tuple[RateLimitRule, ...] = (
    RateLimitRule(_POST, re.compile(r"^/api/auth/(login|register)/?$"), PROFILE_AUTH),
    RateLimitRule(_POST, re.compile(r"^/api/uploads?(/|$)"), PROFILE_UPLOAD),
    RateLimitRule(_POST, re.compile(r"^/api/social/posts/[^/]+/(publish|schedule)/?$"), PROFILE_PUBLISH),
    RateLimitRule(_POST, re.compile(r"^/api/marketplace/checkout(/|$)"), PROFILE_CHECKOUT),
    RateLimitRule(_POST, re.compile(r"^/api/support/conversations(/|$)"), PROFILE_CHAT),
)

_REJECTION_MESSAGES = {
    DIMENSION_IP: "Too many requests from this IP address",
}


def resolve_profile(method: str, path: str) -> str | None:
    method = method.upper()
    for rule in RATE_LIMIT_RULES:
        if rule.matches(method, path):
            return rule.profile
    return None


def get_registry() -> RateLimitRegistry:
    return get_rate_limit_registry(get_settings())


class RateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        profile = resolve_profile(request.method, request.url.path)
        if profile is None:
            return await call_next(request)

        context = getattr(request.state, "context", None)
        client_ip = getattr(context, "client_ip", None) or resolve_client_ip(request)
        organization_id = context.organization_id if context is not None else resolve_organization_id(request)

        decision = get_registry().check(profile, client_ip, organization_id)
        if decision.allowed:
            return await call_next(request)

        dimension = decision.dimension or DIMENSION_IP
        retry_after = decision.retry_after_seconds or 1
        observe_rate_limit_rejection(profile, dimension)
        logger.warning(
            "rate_limit.rejected",
            extra={"profile": profile, "dimension": dimension, "retry_after": retry_after, "client_ip": client_ip},
        )

        response = error_response(
            request,
            status_code=429,
            code="RATE_LIMITED",
            message=_REJECTION_MESSAGES.get(dimension, "Too many requests for this organization"),
            details={"retry_after": retry_after, "profile": profile, "dimension": dimension},
            headers={"Retry-After": str(retry_after)},
        )
        correlation_id = getattr(request.state, "correlation_id", None)
        if correlation_id:
            response.headers["X-Correlation-Id"] = correlation_id
        return response


def reset_rate_limiter() -> None:
    """Clear every counter and rebuild profiles from current settings on next use."""
    reset_rate_limit_registry()
