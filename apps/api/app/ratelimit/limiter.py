from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from app.ratelimit.store import InMemoryRateLimitStore, RateLimitEntry, RateLimitStore


DIMENSION_IP = "ip"
DIMENSION_TENANT = "tenant"

Clock = Callable[[], float]


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ValueError(f"window_ms must be positive, got {self.window_ms}")
        if self.max_requests < 1:
            raise ValueError(f"max_requests must be at least 1, got {self.max_requests}")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int | None = None
    dimension: str | None = None


ALLOWED = RateLimitDecision(allowed=True)


def check_limit(store: RateLimitStore, key: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
    """Count one request for ``key`` against a fixed window.

    A rejected request leaves the entry untouched, so a burst of rejections
    never moves the point at which the window resets.
    """

    def _apply(entry: RateLimitEntry | None) -> tuple[RateLimitEntry, RateLimitDecision]:
        if entry is None or entry.reset_time <= now:
            return RateLimitEntry(count=1, reset_time=now + config.window_ms), ALLOWED

        if entry.count >= config.max_requests:
            retry_after = math.ceil((entry.reset_time - now) / 1000)
            return entry, RateLimitDecision(allowed=False, retry_after_seconds=max(1, retry_after))

        entry.count += 1
        return entry, ALLOWED

    return store.update(key, _apply)


class TenantRateLimiter:
    """Per-IP and per-tenant fixed-window limiter for a single profile."""

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        ip_store: RateLimitStore | None = None,
        tenant_store: RateLimitStore | None = None,
        clock: Clock = monotonic_ms,
    ) -> None:
        self.config = config
        self.ip_store: RateLimitStore = ip_store if ip_store is not None else InMemoryRateLimitStore()
        self.tenant_store: RateLimitStore = tenant_store if tenant_store is not None else InMemoryRateLimitStore()
        self._clock = clock

    def check(self, ip: str, tenant_id: str | None = None) -> RateLimitDecision:
        now = self._clock()
        ip_decision = check_limit(self.ip_store, ip, self.config, now)
        if not ip_decision.allowed:
            return RateLimitDecision(False, ip_decision.retry_after_seconds, DIMENSION_IP)

        if tenant_id:
            tenant_decision = check_limit(self.tenant_store, tenant_id, self.config, now)
            if not tenant_decision.allowed:
                return RateLimitDecision(False, tenant_decision.retry_after_seconds, DIMENSION_TENANT)

        return ALLOWED

    def sweep(self, now: float | None = None) -> int:
        current = self._clock() if now is None else now
        return self.ip_store.sweep(current) + self.tenant_store.sweep(current)

    def reset(self) -> None:
        self.ip_store.clear()
        self.tenant_store.clear()
