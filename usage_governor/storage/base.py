"""
Storage boundary for the governance layer.

Counters and ledger entries are only reached through these protocols so
that the limiters can run against the in-memory store in tests and the
SQLite store in deployments.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from .models import CostLedgerEntry, UsageRecord, WindowEntry


class StorageUnavailableError(Exception):
    """Raised when the backing store cannot serve a read or write."""


class GovernanceStore(Protocol):
    """Durable home of window counters and cost ledger entries."""

    def get_window(self, subject: str, action: str) -> Optional[WindowEntry]:
        """Return the most recent window for the pair, open or expired."""
        ...

    def upsert_window(
        self,
        subject: str,
        action: str,
        now: datetime,
        window_length: timedelta,
        retention: timedelta,
    ) -> WindowEntry:
        """Atomically increment the open window or start a new one at ``now``.

        Must be a single atomic operation: two concurrent calls against the
        same pair never lose an update.
        """
        ...

    def delete_window(self, subject: str, action: str) -> None:
        ...

    def purge_expired_windows(self, now: datetime) -> int:
        """Delete windows whose ``expires_at`` is at or before ``now``."""
        ...

    def get_ledger(
        self, subject: str, action_class: str, period_start: datetime
    ) -> Optional[CostLedgerEntry]:
        ...

    def upsert_ledger(
        self,
        subject: str,
        action_class: str,
        tier: str,
        period_start: datetime,
        cost: float,
    ) -> CostLedgerEntry:
        """Atomically add ``cost`` to the entry for the period, creating it if absent."""
        ...

    def purge_ledger(self, before: datetime) -> int:
        """Delete ledger entries for periods starting before ``before``."""
        ...


class UsageArchive(Protocol):
    """Optional write-through sink for usage records."""

    def append_usage(self, record: UsageRecord) -> None:
        ...

    def fetch_usage(self, start: datetime, end: datetime) -> List[UsageRecord]:
        """Records with ``start <= timestamp <= end``, oldest first."""
        ...
