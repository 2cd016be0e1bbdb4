"""
System-wide usage report for administrative tiers.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from usage_governor.config.loader import AlertThresholds

from .aggregator import CostBreakdown, PerformanceMetrics, UsageAggregator, UsageStats
from .alerts import Alert, AlertManager, AlertRecord, check_alerts


class AdminAccessDenied(Exception):
    """Raised when a non-administrative tier requests the system report."""
    def __init__(self, tier: str):
        super().__init__(f"Tier '{tier}' may not view system usage")
        self.tier = tier


@dataclass(frozen=True)
class SystemReport:
    hours: float
    stats: UsageStats
    performance: PerformanceMetrics
    cost_breakdown: CostBreakdown
    alerts: List[Alert]
    active_alerts: List[AlertRecord] = field(default_factory=list)


def system_report(
    aggregator: UsageAggregator,
    tier: str,
    admin_tiers: Iterable[str],
    thresholds: AlertThresholds,
    hours: float = 1,
    alert_manager: Optional[AlertManager] = None,
) -> SystemReport:
    """Build the system-wide report if ``tier`` is an administrative tier.

    With an ``alert_manager`` the evaluated alerts are also stored there
    (subject to its cooldown) and the report lists every unresolved alert.

    Raises:
        AdminAccessDenied: If tier is not listed in admin_tiers
    """
    if tier not in set(admin_tiers):
        raise AdminAccessDenied(tier)

    alerts = check_alerts(aggregator, thresholds, hours)
    active: List[AlertRecord] = []
    if alert_manager is not None:
        alert_manager.raise_alerts(alerts)
        active = alert_manager.get_active_alerts()

    return SystemReport(
        hours=hours,
        stats=aggregator.get_stats(window_hours=hours),
        performance=aggregator.get_performance_metrics(hours),
        cost_breakdown=aggregator.get_cost_breakdown(hours),
        alerts=alerts,
        active_alerts=active,
    )
