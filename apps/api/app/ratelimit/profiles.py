from __future__ import annotations

import threading
from collections.abc import Callable

from app.core.config import Settings
from app.ratelimit.limiter import Clock, RateLimitConfig, RateLimitDecision, TenantRateLimiter, monotonic_ms
from app.ratelimit.store import InMemoryRateLimitStore, RateLimitStore


PROFILE_AUTH = "auth"
PROFILE_UPLOAD = "upload"
PROFILE_PUBLISH = "publish"
PROFILE_CHECKOUT = "checkout"
PROFILE_CHAT = "chat"

StoreFactory = Callable[[str, str], RateLimitStore]


def _in_memory_store(profile: str, dimension: str) -> RateLimitStore:
    return InMemoryRateLimitStore()


def build_profile_configs(settings: Settings) -> dict[str, RateLimitConfig]:
    return {
        PROFILE_AUTH: RateLimitConfig(settings.rate_limit_auth_window_ms, settings.rate_limit_auth_max_requests),
        PROFILE_UPLOAD: RateLimitConfig(settings.rate_limit_upload_window_ms, settings.rate_limit_upload_max_requests),
        PROFILE_PUBLISH: RateLimitConfig(settings.rate_limit_publish_window_ms, settings.rate_limit_publish_max_requests),
        PROFILE_CHECKOUT: RateLimitConfig(settings.rate_limit_checkout_window_ms, settings.rate_limit_checkout_max_requests),
        PROFILE_CHAT: RateLimitConfig(settings.rate_limit_chat_window_ms, settings.rate_limit_chat_max_requests),
    }


class RateLimitRegistry:
    """Named rate limit profiles, each with its own counter namespace."""

    def __init__(
        self,
        configs: dict[str, RateLimitConfig],
        *,
        clock: Clock = monotonic_ms,
        store_factory: StoreFactory = _in_memory_store,
    ) -> None:
        self._clock = clock
        self._limiters = {
            name: TenantRateLimiter(
                config,
                ip_store=store_factory(name, "ip"),
                tenant_store=store_factory(name, "tenant"),
                clock=clock,
            )
            for name, config in configs.items()
        }

    @property
    def profiles(self) -> list[str]:
        return sorted(self._limiters)

    def limiter(self, profile: str) -> TenantRateLimiter:
        try:
            return self._limiters[profile]
        except KeyError:
            raise KeyError(f"unknown rate limit profile '{profile}'") from None

    def check(self, profile: str, ip: str, tenant_id: str | None = None) -> RateLimitDecision:
        return self.limiter(profile).check(ip, tenant_id)

    def sweep(self, now: float | None = None) -> int:
        current = self._clock() if now is None else now
        return sum(limiter.sweep(current) for limiter in self._limiters.values())

    def reset(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()


_registry: RateLimitRegistry | None = None
_registry_lock = threading.Lock()


def get_rate_limit_registry(settings: Settings) -> RateLimitRegistry:
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = RateLimitRegistry(build_profile_configs(settings))
        return _registry


def reset_rate_limit_registry() -> None:
    """Drop the process-wide registry; the next lookup rebuilds it from settings."""
    global _registry
    with _registry_lock:
        _registry = None
