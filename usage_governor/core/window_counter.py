"""
Fixed-window request counting.

Burst protection per (subject, action). Windows are fixed and
non-overlapping: a burst straddling the boundary of two adjacent windows can
admit up to twice ``max_requests`` in a short span.
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from usage_governor.config.loader import WindowConfig
from usage_governor.storage.base import GovernanceStore
from usage_governor.storage.models import WindowEntry

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 3600

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime; aware values pass through."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utc_clock(clock: Optional[Clock]) -> Clock:
    """Wrap a clock so it always returns aware datetimes."""
    if clock is None:
        return utc_now
    return lambda: as_utc(clock())


@dataclass(frozen=True)
class LimiterStats:
    """Admission decisions counted since creation or the last reset."""
    total_requests: int = 0
    blocked_requests: int = 0

    @property
    def block_rate(self) -> float:
        return self.blocked_requests / self.total_requests if self.total_requests else 0.0


class AdmissionTally:
    """Thread-safe counts of allowed and blocked admission checks."""

    def __init__(self):
        self._lock = threading.Lock()
        self._total = 0
        self._blocked = 0

    def record(self, allowed: bool) -> None:
        with self._lock:
            self._total += 1
            if not allowed:
                self._blocked += 1

    def snapshot(self) -> LimiterStats:
        with self._lock:
            return LimiterStats(total_requests=self._total, blocked_requests=self._blocked)

    def reset(self) -> None:
        with self._lock:
            self._total = 0
            self._blocked = 0


@dataclass(frozen=True)
class WindowCheckResult:
    """Admission decision for one request."""
    allowed: bool
    remaining: int
    reset_time: datetime
    retry_after_seconds: Optional[int] = None


@dataclass(frozen=True)
class WindowStatus:
    """Read-only snapshot of a subject's window."""
    used: int
    limit: int
    remaining: int
    reset_time: datetime


class WindowCounter:
    """Counts requests per (subject, action) in fixed time windows."""

    def __init__(
        self,
        store: GovernanceStore,
        clock: Optional[Clock] = None,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
    ):
        """
        Args:
            store: Backing store for window entries
            clock: Returns the current UTC time; defaults to the system clock
            retention_seconds: How long a window is kept after it starts
        """
        self.store = store
        self.clock = utc_clock(clock)
        self.retention_seconds = retention_seconds
        self._tally = AdmissionTally()

    def _open_window(self, subject: str, action: str, config: WindowConfig, now: datetime) -> Optional[WindowEntry]:
        entry = self.store.get_window(subject, action)
        if entry is None or now >= entry.window_start + config.window_length:
            return None
        return entry

    def check(self, subject: str, action: str, config: WindowConfig) -> WindowCheckResult:
        """Decide whether one more request fits in the current window.

        Nothing is written: with no open window the request is judged against
        a fresh window starting now. The caller increments after admitting.

        Args:
            subject: Identity the limit is tracked against
            action: Limited operation class
            config: Window length and request cap

        Returns:
            WindowCheckResult; ``remaining`` already accounts for this request

        Raises:
            StorageUnavailableError: If the store cannot be read
        """
        now = self.clock()
        entry = self._open_window(subject, action, config, now)
        count = entry.count if entry else 0
        window_start = entry.window_start if entry else now
        reset_time = window_start + config.window_length

        if count >= config.max_requests:
            retry_after = max(1, math.ceil((reset_time - now).total_seconds()))
            logger.info(
                "Rate limit reached for %s/%s: %d/%d, retry in %ds",
                subject, action, count, config.max_requests, retry_after,
            )
            self._tally.record(False)
            return WindowCheckResult(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                retry_after_seconds=retry_after,
            )

        self._tally.record(True)
        return WindowCheckResult(
            allowed=True,
            remaining=max(0, config.max_requests - count - 1),
            reset_time=reset_time,
        )

    def increment(self, subject: str, action: str, config: WindowConfig) -> WindowEntry:
        """Count one admitted request.

        A single atomic upsert: increments the open window, or starts a new
        one at the current time if the previous window has ended.

        Raises:
            StorageUnavailableError: If the store cannot be written
        """
        return self.store.upsert_window(
            subject,
            action,
            now=self.clock(),
            window_length=config.window_length,
            retention=timedelta(seconds=self.retention_seconds),
        )

    def status(self, subject: str, action: str, config: WindowConfig) -> WindowStatus:
        """Current usage for a subject without modifying anything."""
        now = self.clock()
        entry = self._open_window(subject, action, config, now)
        used = entry.count if entry else 0
        reset_time = (entry.window_start if entry else now) + config.window_length
        return WindowStatus(
            used=used,
            limit=config.max_requests,
            remaining=max(0, config.max_requests - used),
            reset_time=reset_time,
        )

    def get_stats(self) -> LimiterStats:
        """Checks made and checks denied since creation or the last reset."""
        return self._tally.snapshot()

    def reset_stats(self) -> None:
        self._tally.reset()

    def purge_expired(self) -> int:
        """Delete windows past their retention. Returns the number removed."""
        removed = self.store.purge_expired_windows(self.clock())
        if removed:
            logger.debug("Purged %d expired rate windows", removed)
        return removed
