"""
Threshold alerts over recent usage.

Flags unusual spend, error rates and latency in the last hour of records,
and budget utilization past the warning or critical level. AlertManager keeps
raised alerts with ids so they can be acknowledged, resolved and reviewed.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from usage_governor.config.loader import AlertThresholds, BudgetConfig

from .aggregator import UsageAggregator
from .cost_limiter import BUDGET_CRITICAL, BUDGET_WARNING, CostLimitResult
from .window_counter import utc_clock

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    """Severity levels for raised alerts."""
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(Enum):
    COST_THRESHOLD = "cost_threshold"
    ERROR_RATE = "error_rate"
    RESPONSE_TIME = "response_time"
    USER_COST = "user_cost"
    BUDGET_UTILIZATION = "budget_utilization"


@dataclass(frozen=True)
class Alert:
    """Breached threshold with the observed value and explanation."""
    type: AlertType
    severity: AlertSeverity
    value: float
    threshold: float
    message: str
    subject: Optional[str] = None
    action_class: Optional[str] = None


def check_alerts(
    aggregator: UsageAggregator,
    thresholds: AlertThresholds,
    hours: float = 1,
) -> List[Alert]:
    """Evaluate alert thresholds over the last ``hours`` of usage.

    Rules:
    - CRITICAL: total cost > cost_per_hour (scaled by ``hours``)
    - WARNING: error rate > error_rate
    - WARNING: average response time > response_time_ms
    - WARNING: a single subject's cost > user_cost_per_hour (scaled by ``hours``)

    Every alert is also logged at WARNING level.

    Args:
        aggregator: Source of usage records
        thresholds: Configured limits
        hours: Evaluation window

    Returns:
        List of raised alerts (empty if none)
    """
    stats = aggregator.get_stats(window_hours=hours)
    if stats.total_requests == 0:
        return []

    alerts = []

    cost_threshold = thresholds.cost_per_hour * hours
    if stats.total_cost > cost_threshold:
        alerts.append(Alert(
            type=AlertType.COST_THRESHOLD,
            severity=AlertSeverity.CRITICAL,
            value=stats.total_cost,
            threshold=cost_threshold,
            message=f"Cost threshold exceeded: ${stats.total_cost:.2f} > ${cost_threshold:.2f} in {hours:g}h",
        ))

    if stats.error_rate > thresholds.error_rate:
        alerts.append(Alert(
            type=AlertType.ERROR_RATE,
            severity=AlertSeverity.WARNING,
            value=stats.error_rate,
            threshold=thresholds.error_rate,
            message=f"Error rate threshold exceeded: {stats.error_rate:.1%} > {thresholds.error_rate:.1%}",
        ))

    if stats.average_response_time > thresholds.response_time_ms:
        alerts.append(Alert(
            type=AlertType.RESPONSE_TIME,
            severity=AlertSeverity.WARNING,
            value=stats.average_response_time,
            threshold=thresholds.response_time_ms,
            message=(
                f"Response time threshold exceeded: {stats.average_response_time:.0f}ms "
                f"> {thresholds.response_time_ms:.0f}ms"
            ),
        ))

    user_threshold = thresholds.user_cost_per_hour * hours
    for user in stats.top_users:
        if user.cost > user_threshold:
            alerts.append(Alert(
                type=AlertType.USER_COST,
                severity=AlertSeverity.WARNING,
                value=user.cost,
                threshold=user_threshold,
                subject=user.subject,
                message=f"User cost threshold exceeded: {user.subject} - ${user.cost:.2f} > ${user_threshold:.2f}",
            ))

    for alert in alerts:
        logger.warning("ALERT [%s] %s", alert.severity.value, alert.message)

    return alerts


def check_budget_alerts(
    subject: str,
    statuses: Mapping[str, CostLimitResult],
    budget: BudgetConfig,
) -> List[Alert]:
    """Raise an alert for every action class at or past a utilization level.

    Args:
        subject: Identity the statuses belong to
        statuses: Budget status per action class, as from ``get_budget_status``
        budget: Supplies the warning and critical percentages

    Returns:
        CRITICAL alerts for classes at the critical level, WARNING alerts for
        classes at the warning level, ordered by action class
    """
    alerts = []
    for action_class, result in sorted(statuses.items()):
        if result.level == BUDGET_CRITICAL:
            severity, threshold = AlertSeverity.CRITICAL, budget.critical_percent
        elif result.level == BUDGET_WARNING:
            severity, threshold = AlertSeverity.WARNING, budget.warning_percent
        else:
            continue
        alerts.append(Alert(
            type=AlertType.BUDGET_UTILIZATION,
            severity=severity,
            value=result.percentage_used,
            threshold=threshold,
            subject=subject,
            action_class=action_class,
            message=(
                f"Budget utilization {severity.value}: {subject} has used "
                f"{result.percentage_used:.0f}% of the {action_class} budget "
                f"(${result.cost_used:.2f} of ${result.cost_limit:.2f})"
            ),
        ))

    for alert in alerts:
        logger.warning("ALERT [%s] %s", alert.severity.value, alert.message)

    return alerts


DEFAULT_RETENTION_DAYS = 7


@dataclass(frozen=True)
class AlertRecord:
    """An alert kept by AlertManager, with its lifecycle state."""
    id: str
    alert: Alert
    raised_at: datetime
    acknowledged: bool = False
    resolved_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.resolved_at is None


def _cooldown_key(alert: Alert) -> Tuple:
    return (alert.type, alert.severity, alert.subject, alert.action_class)


class AlertManager:
    """In-process alert log.

    An alert is stored only if no alert with the same type, severity,
    subject and action class was stored within the cooldown. Stored alerts
    stay active until resolved. ``cleanup`` drops resolved alerts older than
    the retention; unresolved alerts are never dropped.
    """

    def __init__(
        self,
        cooldown_minutes: float = 60.0,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if cooldown_minutes < 0:
            raise ValueError("cooldown_minutes cannot be negative")
        if retention_days <= 0:
            raise ValueError("retention_days must be > 0")
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.retention = timedelta(days=retention_days)
        self.clock = utc_clock(clock)
        # Insertion order is raise order
        self._records: Dict[str, AlertRecord] = {}
        self._last_raised: Dict[Tuple, datetime] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_thresholds(
        cls,
        thresholds: AlertThresholds,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "AlertManager":
        return cls(cooldown_minutes=thresholds.cooldown_minutes, clock=clock)

    def raise_alerts(self, alerts: Iterable[Alert]) -> List[AlertRecord]:
        """Store each alert whose cooldown has passed.

        Returns:
            The newly stored records; alerts still in cooldown are skipped
        """
        now = self.clock()
        stored = []
        with self._lock:
            for alert in alerts:
                key = _cooldown_key(alert)
                last = self._last_raised.get(key)
                if last is not None and now < last + self.cooldown:
                    logger.debug("Alert in cooldown, skipped: %s", alert.message)
                    continue
                record = AlertRecord(id=uuid.uuid4().hex, alert=alert, raised_at=now)
                self._records[record.id] = record
                self._last_raised[key] = now
                stored.append(record)
        for record in stored:
            logger.info("Alert %s raised [%s]: %s",
                        record.id, record.alert.severity.value, record.alert.message)
        return stored

    def get(self, alert_id: str) -> Optional[AlertRecord]:
        with self._lock:
            return self._records.get(alert_id)

    def acknowledge(self, alert_id: str) -> bool:
        """Mark an alert as seen. False if unknown or already acknowledged."""
        with self._lock:
            record = self._records.get(alert_id)
            if record is None or record.acknowledged:
                return False
            self._records[alert_id] = replace(record, acknowledged=True)
        logger.info("Alert %s acknowledged", alert_id)
        return True

    def resolve(self, alert_id: str) -> bool:
        """Close an alert. False if unknown or already resolved."""
        now = self.clock()
        with self._lock:
            record = self._records.get(alert_id)
            if record is None or record.resolved_at is not None:
                return False
            self._records[alert_id] = replace(record, resolved_at=now)
        logger.info("Alert %s resolved", alert_id)
        return True

    def get_active_alerts(self) -> List[AlertRecord]:
        """Unresolved alerts, oldest first."""
        with self._lock:
            return [r for r in self._records.values() if r.active]

    def get_alert_history(self, hours: float = 24) -> List[AlertRecord]:
        """Alerts raised within the last ``hours``, resolved or not, oldest first."""
        cutoff = self.clock() - timedelta(hours=hours)
        with self._lock:
            return [r for r in self._records.values() if r.raised_at >= cutoff]

    def cleanup(self) -> int:
        """Drop resolved alerts older than the retention and stale cooldowns.

        Returns:
            Number of alerts removed
        """
        now = self.clock()
        cutoff = now - self.retention
        with self._lock:
            expired = [
                alert_id for alert_id, r in self._records.items()
                if not r.active and r.raised_at < cutoff
            ]
            for alert_id in expired:
                del self._records[alert_id]
            for key in [k for k, t in self._last_raised.items() if t + self.cooldown <= now]:
                del self._last_raised[key]
        if expired:
            logger.debug("Cleaned up %d old alerts", len(expired))
        return len(expired)
