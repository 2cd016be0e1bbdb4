"""
In-process implementation of the storage protocols.

Used by tests and single-process deployments. Keys are hashed onto a fixed
set of lock stripes, so unrelated keys rarely wait on each other and the
number of locks stays constant however many subjects are seen.
"""

import threading
from datetime import datetime, timedelta
from typing import Dict, Hashable, List, Optional, Tuple

from .models import CostLedgerEntry, UsageRecord, WindowEntry

DEFAULT_LOCK_STRIPES = 64


class InMemoryStore:
    """Dictionary-backed governance store with striped per-key locking."""

    def __init__(self, lock_stripes: int = DEFAULT_LOCK_STRIPES):
        if lock_stripes <= 0:
            raise ValueError("lock_stripes must be > 0")
        self._windows: Dict[Tuple[str, str], WindowEntry] = {}
        self._ledger: Dict[Tuple[str, str, datetime], CostLedgerEntry] = {}
        self._usage: List[UsageRecord] = []
        self._usage_lock = threading.Lock()
        self._key_locks: Tuple[threading.Lock, ...] = tuple(
            threading.Lock() for _ in range(lock_stripes)
        )

    def _lock_for(self, key: Hashable) -> threading.Lock:
        return self._key_locks[hash(key) % len(self._key_locks)]

    # Windows

    def get_window(self, subject: str, action: str) -> Optional[WindowEntry]:
        return self._windows.get((subject, action))

    def upsert_window(
        self,
        subject: str,
        action: str,
        now: datetime,
        window_length: timedelta,
        retention: timedelta,
    ) -> WindowEntry:
        key = (subject, action)
        with self._lock_for(("window",) + key):
            current = self._windows.get(key)
            if current is not None and now < current.window_start + window_length:
                entry = WindowEntry(
                    subject=subject,
                    action=action,
                    count=current.count + 1,
                    window_start=current.window_start,
                    expires_at=current.expires_at,
                )
            else:
                entry = WindowEntry(
                    subject=subject,
                    action=action,
                    count=1,
                    window_start=now,
                    expires_at=now + max(retention, window_length),
                )
            self._windows[key] = entry
            return entry

    def delete_window(self, subject: str, action: str) -> None:
        with self._lock_for(("window", subject, action)):
            self._windows.pop((subject, action), None)

    def purge_expired_windows(self, now: datetime) -> int:
        removed = 0
        for key in list(self._windows):
            with self._lock_for(("window",) + key):
                entry = self._windows.get(key)
                if entry is not None and entry.expires_at <= now:
                    del self._windows[key]
                    removed += 1
        return removed

    # Ledger

    def get_ledger(
        self, subject: str, action_class: str, period_start: datetime
    ) -> Optional[CostLedgerEntry]:
        return self._ledger.get((subject, action_class, period_start))

    def upsert_ledger(
        self,
        subject: str,
        action_class: str,
        tier: str,
        period_start: datetime,
        cost: float,
    ) -> CostLedgerEntry:
        key = (subject, action_class, period_start)
        with self._lock_for(("ledger",) + key):
            current = self._ledger.get(key)
            used = (current.cost_used if current else 0.0) + cost
            entry = CostLedgerEntry(
                subject=subject,
                action_class=action_class,
                tier=tier,
                cost_used=used,
                period_start=period_start,
            )
            self._ledger[key] = entry
            return entry

    def purge_ledger(self, before: datetime) -> int:
        removed = 0
        for key in list(self._ledger):
            with self._lock_for(("ledger",) + key):
                entry = self._ledger.get(key)
                if entry is not None and entry.period_start < before:
                    del self._ledger[key]
                    removed += 1
        return removed

    # Usage archive

    def append_usage(self, record: UsageRecord) -> None:
        with self._usage_lock:
            self._usage.append(record)

    def fetch_usage(self, start: datetime, end: datetime) -> List[UsageRecord]:
        with self._usage_lock:
            selected = [r for r in self._usage if start <= r.timestamp <= end]
        return sorted(selected, key=lambda r: r.timestamp)
