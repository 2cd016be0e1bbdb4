"""
Data models for storage layer.

Defines the three record kinds owned by the governance layer.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


@dataclass(frozen=True)
class WindowEntry:
    """Request counter for one fixed window of a (subject, action) pair.

    A window is open while ``now < window_start + window_length``. The
    entry becomes eligible for deletion once ``expires_at`` has passed.
    """
    subject: str
    action: str
    count: int
    window_start: datetime
    expires_at: datetime

    def __post_init__(self):
        """Validate counter values."""
        if self.count < 0:
            raise ValueError("count cannot be negative")
        if self.expires_at < self.window_start:
            raise ValueError("expires_at must not precede window_start")


@dataclass(frozen=True)
class CostLedgerEntry:
    """Accumulated spend for a subject and action class within one budget period."""
    subject: str
    action_class: str
    tier: str
    cost_used: float
    period_start: datetime

    def __post_init__(self):
        """Validate cost is non-negative."""
        if self.cost_used < 0:
            raise ValueError("cost_used cannot be negative")


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one completed operation.

    Written once per HTTP-level or provider-level call, successful or not.
    ``cost`` may be left as None by the caller, in which case it is derived
    from the pricing configuration when the record is logged.
    """
    subject: str
    endpoint: str
    method: str
    timestamp: datetime
    response_time_ms: float
    status_code: int
    request_size: int = 0
    response_size: int = 0
    cached: bool = False
    model: Optional[str] = None
    tokens: Optional[int] = None
    cost: Optional[float] = None
    image_size: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def __post_init__(self):
        """Validate measured values are non-negative; naive timestamps are UTC."""
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))
        if self.response_time_ms < 0:
            raise ValueError("response_time_ms cannot be negative")
        if self.request_size < 0 or self.response_size < 0:
            raise ValueError("request/response sizes cannot be negative")
        if self.tokens is not None and self.tokens < 0:
            raise ValueError("tokens cannot be negative")
        if self.cost is not None and self.cost < 0:
            raise ValueError("cost cannot be negative")

    @property
    def is_error(self) -> bool:
        """True for 4xx and 5xx outcomes."""
        return self.status_code >= 400
