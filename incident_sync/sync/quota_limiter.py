"""Fixed-window quota limiter shared by every upstream call of the engine."""

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog

log = structlog.stdlib.get_logger()

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaLimiter:
    """
    Budget of ``capacity`` cost units, fully restored at each window boundary.

    Windows are aligned to multiples of ``window_seconds`` since the Unix
    epoch. All state changes happen under one lock, so the
    sum of granted costs within a window never exceeds ``capacity``.
    """

    def __init__(
        self,
        capacity: int,
        window_seconds: int = 3600,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize the limiter.

        Args:
            capacity: Cost units available per window
            window_seconds: Window length in seconds
            clock: Returns the current aware datetime; defaults to UTC wall clock
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._capacity = capacity
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._window_start = self._current_window_start()
        self._remaining = capacity

        log.info("quota_limiter_initialized", capacity=capacity, window_seconds=window_seconds)

    @property
    def capacity(self) -> int:
        return self._capacity

    def try_consume(self, cost: int) -> bool:
        """Reserve ``cost`` units if available. Leaves the balance untouched on denial."""
        if cost <= 0:
            raise ValueError("cost must be positive")

        with self._lock:
            self._roll_window()
            if self._remaining < cost:
                log.debug("quota_denied", cost=cost, remaining=self._remaining)
                return False
            self._remaining -= cost
            return True

    def remaining(self) -> int:
        with self._lock:
            self._roll_window()
            return self._remaining

    def reset_at(self) -> datetime:
        with self._lock:
            self._roll_window()
            return self._window_start + self._window

    def observe_remaining(self, hint: int | None) -> int:
        """
        Lower the local balance to an upstream-reported remaining quota.

        Other consumers may share the upstream quota, so the hint can only
        reduce the balance, never raise it.

        Returns:
            Balance after reconciliation
        """
        with self._lock:
            self._roll_window()
            if hint is not None and hint < self._remaining:
                log.info(
                    "quota_reconciled_to_upstream_hint",
                    local_remaining=self._remaining,
                    upstream_remaining=hint,
                )
                self._remaining = max(hint, 0)
            return self._remaining

    def exhaust(self) -> None:
        """Drop the balance to zero until the next window (upstream answered 429)."""
        self.observe_remaining(0)

    def _current_window_start(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        elapsed = now - _EPOCH
        windows = elapsed // self._window
        return _EPOCH + windows * self._window

    def _roll_window(self) -> None:
        # Caller holds the lock.
        window_start = self._current_window_start()
        if window_start > self._window_start:
            log.info(
                "quota_window_reset",
                previous_remaining=self._remaining,
                capacity=self._capacity,
                window_start=window_start,
            )
            self._window_start = window_start
            self._remaining = self._capacity
