from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from app.metrics import observe_rate_limit_sweep


logger = logging.getLogger("app.ratelimit.sweeper")


class RateLimitSweeper:
    """Periodically removes expired rate limit entries on a daemon thread.

    The sweep runs on its own schedule regardless of request traffic, which
    bounds memory for keys that stop sending requests.
    """

    def __init__(self, sweep: Callable[[], int], interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self._sweep = sweep
        self._interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="rate-limit-sweeper", daemon=True)
            self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._stop.set()
            self._thread = None
        if thread is not None:
            thread.join(timeout)

    def run_once(self) -> int:
        removed = self._sweep()
        observe_rate_limit_sweep(removed)
        if removed:
            logger.debug("rate_limit.swept", extra={"swept": removed})
        return removed

    def _run(self) -> None:
        while not self._stop.wait(self._interval_seconds):
            try:
                self.run_once()
            except Exception as exc:
                logger.exception("rate_limit.sweep_failed", extra={"error": str(exc)})
