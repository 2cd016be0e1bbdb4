"""
Unit tests for threshold alerts and the administrative report.
"""

import pytest

from usage_governor.config.loader import AlertThresholds, BudgetConfig, TierBudget, default_config
from usage_governor.core.aggregator import UsageAggregator
from usage_governor.core.alerts import (
    Alert,
    AlertManager,
    AlertSeverity,
    AlertType,
    check_alerts,
    check_budget_alerts,
)
from usage_governor.core.cost_limiter import TieredCostLimiter
from usage_governor.core.pricing import CostCategory
from usage_governor.core.reports import AdminAccessDenied, system_report
from usage_governor.storage.memory import InMemoryStore
from usage_governor.storage.models import UsageRecord

THRESHOLDS = AlertThresholds(
    cost_per_hour=1.0,
    error_rate=0.2,
    response_time_ms=1000,
    user_cost_per_hour=0.5,
)


def _log(aggregator, clock, count=1, **overrides):
    values = dict(
        subject="alice",
        endpoint="/api/ai/text",
        method="POST",
        timestamp=clock.now,
        response_time_ms=100.0,
        status_code=200,
        cost=0.01,
    )
    values.update(overrides)
    for _ in range(count):
        aggregator.log_usage(UsageRecord(**values))


@pytest.fixture
def aggregator(clock):
    return UsageAggregator(clock=clock)


class TestAlerts:
    """Test alert threshold evaluation."""

    def test_no_usage_no_alerts(self, aggregator):
        assert check_alerts(aggregator, THRESHOLDS) == []

    def test_normal_usage_no_alerts(self, aggregator, clock):
        _log(aggregator, clock, count=10)

        assert check_alerts(aggregator, THRESHOLDS) == []

    def test_cost_threshold_is_critical(self, aggregator, clock):
        _log(aggregator, clock, subject="alice", cost=0.4)
        _log(aggregator, clock, subject="bob", cost=0.4)
        _log(aggregator, clock, subject="carol", cost=0.4)

        alerts = check_alerts(aggregator, THRESHOLDS)

        assert [a.type for a in alerts] == [AlertType.COST_THRESHOLD]
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].value == pytest.approx(1.2)

    def test_error_rate_warning(self, aggregator, clock):
        _log(aggregator, clock, count=3)
        _log(aggregator, clock, status_code=503)

        alerts = check_alerts(aggregator, THRESHOLDS)

        assert [a.type for a in alerts] == [AlertType.ERROR_RATE]
        assert alerts[0].severity == AlertSeverity.WARNING
        assert alerts[0].value == pytest.approx(0.25)

    def test_response_time_warning(self, aggregator, clock):
        _log(aggregator, clock, response_time_ms=2500)

        alerts = check_alerts(aggregator, THRESHOLDS)

        assert [a.type for a in alerts] == [AlertType.RESPONSE_TIME]

    def test_user_cost_warning_names_subject(self, aggregator, clock):
        _log(aggregator, clock, subject="mallory", cost=0.6)
        _log(aggregator, clock, subject="alice", cost=0.1)

        alerts = check_alerts(aggregator, THRESHOLDS)

        assert [a.type for a in alerts] == [AlertType.USER_COST]
        assert alerts[0].subject == "mallory"
        assert "mallory" in alerts[0].message

    def test_only_recent_hour_is_evaluated(self, aggregator, clock):
        _log(aggregator, clock, cost=5.0)
        clock.advance(hours=2)

        assert check_alerts(aggregator, THRESHOLDS) == []


class TestSystemReport:
    """Test the tier-gated system-wide report."""

    def test_non_admin_tier_is_denied(self, aggregator):
        with pytest.raises(AdminAccessDenied, match="free"):
            system_report(aggregator, "free", ("admin",), THRESHOLDS)

    def test_admin_tier_gets_report(self, aggregator, clock):
        _log(aggregator, clock, endpoint="/api/ai/image", cost=0.02, count=2)
        _log(aggregator, clock, status_code=500, cost=0.0)

        report = system_report(aggregator, "admin", ("admin",), THRESHOLDS, hours=1)

        assert report.hours == 1
        assert report.stats.total_requests == 3
        assert report.performance.error_rate == pytest.approx(1 / 3)
        assert report.cost_breakdown.cost_of(CostCategory.IMAGE_GENERATION) == pytest.approx(0.04)
        assert [a.type for a in report.alerts] == [AlertType.ERROR_RATE]

    def test_report_stores_alerts_in_manager(self, aggregator, clock):
        manager = AlertManager(cooldown_minutes=30, clock=clock)
        _log(aggregator, clock, status_code=500)

        first = system_report(aggregator, "admin", ("admin",), THRESHOLDS, alert_manager=manager)
        second = system_report(aggregator, "admin", ("admin",), THRESHOLDS, alert_manager=manager)

        assert [a.type for a in second.alerts] == [AlertType.ERROR_RATE]
        assert len(first.active_alerts) == 1
        assert [r.id for r in second.active_alerts] == [first.active_alerts[0].id]


def _alert(alert_type=AlertType.ERROR_RATE, severity=AlertSeverity.WARNING, subject=None):
    return Alert(
        type=alert_type,
        severity=severity,
        value=0.5,
        threshold=0.2,
        message=f"{alert_type.value} for {subject}",
        subject=subject,
    )


class TestBudgetAlerts:
    """Test alerts derived from budget utilization."""

    def _limiter(self, clock):
        budget = BudgetConfig(tiers={
            "free": TierBudget("free", default_budget=1.0, budgets={"image_generation": 0.2}),
        })
        return TieredCostLimiter(InMemoryStore(), budget, default_config().models, clock=clock)

    def test_levels_map_to_severities(self, clock):
        limiter = self._limiter(clock)
        limiter.record_usage("alice", "text_generation", 0.8, "free")
        limiter.record_usage("alice", "image_generation", 0.19, "free")
        statuses = limiter.get_budget_status("alice", "free", ["text_generation", "image_generation", "other"])

        alerts = check_budget_alerts("alice", statuses, limiter.budget)

        assert [(a.action_class, a.severity) for a in alerts] == [
            ("image_generation", AlertSeverity.CRITICAL),
            ("text_generation", AlertSeverity.WARNING),
        ]
        assert alerts[0].type == AlertType.BUDGET_UTILIZATION
        assert alerts[0].threshold == 90.0
        assert alerts[1].value == pytest.approx(80.0)
        assert "alice" in alerts[1].message

    def test_low_utilization_raises_nothing(self, clock):
        limiter = self._limiter(clock)
        limiter.record_usage("alice", "text_generation", 0.1, "free")

        statuses = limiter.get_budget_status("alice", "free", ["text_generation"])

        assert check_budget_alerts("alice", statuses, limiter.budget) == []


class TestAlertManager:
    """Test the alert log: ids, cooldown, acknowledgement and resolution."""

    def test_raised_alerts_get_unique_ids(self, clock):
        manager = AlertManager(clock=clock)

        records = manager.raise_alerts([_alert(subject="a"), _alert(subject="b")])

        assert len({r.id for r in records}) == 2
        assert all(r.raised_at == clock.now and not r.acknowledged and r.active for r in records)
        assert manager.get(records[0].id) == records[0]

    def test_cooldown_suppresses_repeats(self, clock):
        manager = AlertManager(cooldown_minutes=30, clock=clock)
        manager.raise_alerts([_alert()])

        clock.advance(minutes=29)
        assert manager.raise_alerts([_alert()]) == []

        clock.advance(minutes=1)
        assert len(manager.raise_alerts([_alert()])) == 1
        assert len(manager.get_active_alerts()) == 2

    def test_cooldown_is_per_type_severity_and_subject(self, clock):
        manager = AlertManager(cooldown_minutes=30, clock=clock)
        manager.raise_alerts([_alert()])

        stored = manager.raise_alerts([
            _alert(severity=AlertSeverity.CRITICAL),
            _alert(alert_type=AlertType.RESPONSE_TIME),
            _alert(subject="mallory"),
        ])

        assert len(stored) == 3

    def test_zero_cooldown_stores_every_alert(self, clock):
        manager = AlertManager(cooldown_minutes=0, clock=clock)

        manager.raise_alerts([_alert()])
        manager.raise_alerts([_alert()])

        assert len(manager.get_active_alerts()) == 2

    def test_acknowledge_once(self, clock):
        manager = AlertManager(clock=clock)
        record = manager.raise_alerts([_alert()])[0]

        assert manager.acknowledge(record.id) is True
        assert manager.acknowledge(record.id) is False
        assert manager.acknowledge("missing") is False
        assert manager.get(record.id).acknowledged is True
        assert manager.get(record.id).active is True

    def test_resolve_removes_from_active(self, clock):
        manager = AlertManager(clock=clock)
        first, second = manager.raise_alerts([_alert(subject="a"), _alert(subject="b")])
        clock.advance(minutes=5)

        assert manager.resolve(first.id) is True
        assert manager.resolve(first.id) is False
        assert manager.resolve("missing") is False
        assert [r.id for r in manager.get_active_alerts()] == [second.id]
        assert manager.get(first.id).resolved_at == clock.now

    def test_history_covers_resolved_alerts_within_hours(self, clock):
        manager = AlertManager(cooldown_minutes=0, clock=clock)
        old = manager.raise_alerts([_alert(subject="old")])[0]
        clock.advance(hours=30)
        recent = manager.raise_alerts([_alert(subject="recent")])[0]
        manager.resolve(recent.id)

        assert [r.id for r in manager.get_alert_history(24)] == [recent.id]
        assert [r.id for r in manager.get_alert_history(48)] == [old.id, recent.id]

    def test_cleanup_keeps_unresolved_alerts(self, clock):
        manager = AlertManager(cooldown_minutes=0, retention_days=7, clock=clock)
        resolved = manager.raise_alerts([_alert(subject="resolved")])[0]
        open_alert = manager.raise_alerts([_alert(subject="open")])[0]
        manager.resolve(resolved.id)
        clock.advance(days=8)

        assert manager.cleanup() == 1
        assert manager.get(resolved.id) is None
        assert manager.get(open_alert.id) is not None

    def test_from_thresholds_uses_configured_cooldown(self, clock):
        manager = AlertManager.from_thresholds(AlertThresholds(cooldown_minutes=5), clock=clock)

        assert manager.cooldown.total_seconds() == 300

    def test_invalid_settings_rejected(self):
        with pytest.raises(ValueError):
            AlertManager(cooldown_minutes=-1)
        with pytest.raises(ValueError):
            AlertManager(retention_days=0)
