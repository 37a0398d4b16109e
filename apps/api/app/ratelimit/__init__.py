from app.ratelimit.limiter import (
    DIMENSION_IP,
    DIMENSION_TENANT,
    RateLimitConfig,
    RateLimitDecision,
    TenantRateLimiter,
    check_limit,
    monotonic_ms,
)
from app.ratelimit.profiles import (
    PROFILE_AUTH,
    PROFILE_CHAT,
    PROFILE_CHECKOUT,
    PROFILE_PUBLISH,
    PROFILE_UPLOAD,
    RateLimitRegistry,
    build_profile_configs,
    get_rate_limit_registry,
    reset_rate_limit_registry,
)
from app.ratelimit.store import InMemoryRateLimitStore, RateLimitEntry, RateLimitStore
from app.ratelimit.sweeper import RateLimitSweeper

__all__ = [
    "DIMENSION_IP",
    "DIMENSION_TENANT",
    "PROFILE_AUTH",
    "PROFILE_CHAT",
    "PROFILE_CHECKOUT",
    "PROFILE_PUBLISH",
    "PROFILE_UPLOAD",
    "InMemoryRateLimitStore",
    "RateLimitConfig",
    "RateLimitDecision",
    "RateLimitEntry",
    "RateLimitRegistry",
    "RateLimitStore",
    "RateLimitSweeper",
    "TenantRateLimiter",
    "build_profile_configs",
    "check_limit",
    "get_rate_limit_registry",
    "monotonic_ms",
    "reset_rate_limit_registry",
]
