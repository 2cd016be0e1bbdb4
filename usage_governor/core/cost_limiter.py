"""
Cost-based admission control.

Tracks accumulated spend per subject and action class within budget periods
and admits a request only if its estimated cost still fits the subject's
tier budget. Also selects generation models from the static model table.

Enforcement Order (as composed by the caller):
1. Window counter - cheap burst protection
2. Cost limiter - budget-aware admission for cost-bearing actions
3. Operation, then record_usage with the actual cost
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Optional

from usage_governor.config.loader import BudgetConfig, ModelSpec, ModelTable
from usage_governor.storage.base import GovernanceStore
from usage_governor.storage.models import CostLedgerEntry

from .window_counter import AdmissionTally, LimiterStats, utc_clock

logger = logging.getLogger(__name__)

# Absorbs floating-point error at an exact budget boundary.
COST_EPSILON = 1e-6

BUDGET_EXCEEDED = "budget_exceeded"

# Budget utilization levels
BUDGET_OK = "ok"
BUDGET_WARNING = "warning"
BUDGET_CRITICAL = "critical"

USE_CASES = ("speed", "quality", "cost")

# A cost-preferring tier takes the cheapest model if it keeps this share of quality.
COST_EFFECTIVE_QUALITY_RATIO = 0.8

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class CostLimitResult:
    """Admission decision for a cost-bearing request."""
    allowed: bool
    remaining: float
    reset_time: datetime
    cost_used: float
    cost_limit: float
    tier: str
    reason: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    percentage_used: float = 0.0
    level: str = BUDGET_OK


@dataclass(frozen=True)
class ModelRecommendation:
    """Model chosen for a content type and optimization goal."""
    model: str
    reason: str
    cost_multiplier: float
    expected_quality: float
    expected_speed: float


def period_start_for(now: datetime, period: timedelta) -> datetime:
    """Start of the budget period containing ``now``.

    Periods are aligned to multiples of ``period`` since the UNIX epoch, so a
    24 hour period starts at midnight UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now - ((now - _EPOCH) % period)


def utilization(cost_used: float, cost_limit: float) -> float:
    """Share of the budget spent, in percent. A zero budget with no spend is 0%, otherwise 100%."""
    if cost_limit <= 0:
        return 100.0 if cost_used > 0 else 0.0
    return cost_used / cost_limit * 100


def budget_level(percentage: float, budget: BudgetConfig) -> str:
    if percentage >= budget.critical_percent:
        return BUDGET_CRITICAL
    if percentage >= budget.warning_percent:
        return BUDGET_WARNING
    return BUDGET_OK


class TieredCostLimiter:
    """Per-tier budget enforcement over a cost ledger."""

    def __init__(
        self,
        store: GovernanceStore,
        budget: BudgetConfig,
        models: ModelTable,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.clock = utc_clock(clock)
        self._budget = budget
        self._models = models
        self._config_lock = threading.Lock()
        self._tally = AdmissionTally()

    @property
    def budget(self) -> BudgetConfig:
        return self._budget

    @property
    def models(self) -> ModelTable:
        return self._models

    def update_config(self, budget: BudgetConfig, models: Optional[ModelTable] = None) -> None:
        """Swap in new budgets (and optionally models) without a restart.

        In-flight checks keep using the configuration they started with.
        """
        with self._config_lock:
            self._budget = budget
            if models is not None:
                self._models = models
        logger.info("Cost limiter configuration updated: tiers=%s", sorted(budget.tiers))

    def check_limit(
        self,
        subject: str,
        action_class: str,
        estimated_cost: float,
        tier: str = "free",
    ) -> CostLimitResult:
        """Decide whether a request with the given estimated cost fits the budget.

        A request is admitted when ``cost_used + estimated_cost`` does not
        exceed the tier's budget for the action class (within COST_EPSILON).
        An unknown tier is treated as the most restrictive configured tier.

        Args:
            subject: Identity the budget is tracked against
            action_class: Budget bucket of the operation
            estimated_cost: Expected cost of the request
            tier: Subject's service tier

        Returns:
            CostLimitResult with reason "budget_exceeded" when denied

        Raises:
            ValueError: If estimated_cost is negative
            StorageUnavailableError: If the ledger cannot be read
        """
        if estimated_cost < 0:
            raise ValueError("estimated_cost cannot be negative")

        result = self._evaluate(subject, action_class, estimated_cost, tier)
        self._tally.record(result.allowed)
        return result

    def _evaluate(
        self,
        subject: str,
        action_class: str,
        estimated_cost: float,
        tier: str,
    ) -> CostLimitResult:
        budget = self._budget
        tier_budget = budget.resolve_tier(tier, action_class)
        cost_limit = tier_budget.budget_for(action_class)

        now = self.clock()
        period_start = period_start_for(now, budget.period)
        reset_time = period_start + budget.period

        entry = self.store.get_ledger(subject, action_class, period_start)
        cost_used = entry.cost_used if entry else 0.0
        remaining = max(0.0, cost_limit - cost_used)
        percentage = utilization(cost_used, cost_limit)
        level = budget_level(percentage, budget)

        if cost_used + estimated_cost > cost_limit + COST_EPSILON:
            retry_after = max(1, math.ceil((reset_time - now).total_seconds()))
            logger.info(
                "Budget exceeded for %s/%s (tier %s): $%.4f used + $%.4f estimated > $%.4f",
                subject, action_class, tier_budget.name, cost_used, estimated_cost, cost_limit,
            )
            return CostLimitResult(
                allowed=False,
                remaining=remaining,
                reset_time=reset_time,
                cost_used=cost_used,
                cost_limit=cost_limit,
                tier=tier_budget.name,
                reason=BUDGET_EXCEEDED,
                retry_after_seconds=retry_after,
                percentage_used=percentage,
                level=level,
            )

        return CostLimitResult(
            allowed=True,
            remaining=remaining,
            reset_time=reset_time,
            cost_used=cost_used,
            cost_limit=cost_limit,
            tier=tier_budget.name,
            percentage_used=percentage,
            level=level,
        )

    def record_usage(
        self,
        subject: str,
        action_class: str,
        actual_cost: float,
        tier: str = "free",
    ) -> CostLedgerEntry:
        """Add the actual cost of a completed operation to the active period.

        Raises:
            ValueError: If actual_cost is negative
            StorageUnavailableError: If the ledger cannot be written
        """
        if actual_cost < 0:
            raise ValueError("actual_cost cannot be negative")

        budget = self._budget
        tier_name = budget.resolve_tier(tier, action_class).name
        period_start = period_start_for(self.clock(), budget.period)
        return self.store.upsert_ledger(
            subject, action_class, tier_name, period_start, actual_cost
        )

    def get_budget_status(
        self,
        subject: str,
        tier: str = "free",
        action_classes: Optional[Iterable[str]] = None,
    ) -> Dict[str, CostLimitResult]:
        """Budget usage for each action class, without admitting or counting anything.

        Args:
            subject: Identity the budget is tracked against
            tier: Subject's service tier
            action_classes: Classes to report; defaults to every class with
                an explicit budget in the configuration

        Returns:
            Mapping of action class to a zero-cost CostLimitResult carrying
            the percentage used and the warning/critical level
        """
        names = list(action_classes) if action_classes is not None else list(self._budget.action_classes)
        return {name: self._evaluate(subject, name, 0.0, tier) for name in names}

    def get_stats(self) -> LimiterStats:
        """Budget checks made and denied since creation or the last reset."""
        return self._tally.snapshot()

    def reset_stats(self) -> None:
        self._tally.reset()

    def get_model_recommendation(
        self,
        content_type: str,
        use_case: str,
        tier: str = "free",
    ) -> ModelRecommendation:
        """Pick a model from the static table.

        - speed: highest speed score
        - quality: highest quality score
        - cost: lowest cost multiplier

        Ties prefer the lower cost multiplier, then the model name. Tiers
        marked ``prefer_cost_effective`` get the cheapest model whenever its
        quality is at least 80% of the chosen model's.

        Raises:
            ValueError: If content type or use case is not supported
        """
        if use_case not in USE_CASES:
            raise ValueError(f"Unsupported use case: {use_case}. Must be one of: {list(USE_CASES)}")

        models = self._models.models_for(content_type)
        cheapest = min(models, key=lambda m: (m.cost_multiplier, m.name))

        if use_case == "speed":
            selected = min(models, key=lambda m: (-m.speed_score, m.cost_multiplier, m.name))
        elif use_case == "quality":
            selected = min(models, key=lambda m: (-m.quality_score, m.cost_multiplier, m.name))
        else:
            selected = cheapest

        tier_budget = self._budget.resolve_tier(tier)
        downgraded = False
        if (tier_budget.prefer_cost_effective
                and use_case != "cost"
                and cheapest.quality_score >= selected.quality_score * COST_EFFECTIVE_QUALITY_RATIO):
            downgraded = selected is not cheapest
            selected = cheapest

        return ModelRecommendation(
            model=selected.name,
            reason=_recommendation_reason(selected, use_case, tier_budget.name, downgraded),
            cost_multiplier=selected.cost_multiplier,
            expected_quality=selected.quality_score,
            expected_speed=selected.speed_score,
        )


def _recommendation_reason(model: ModelSpec, use_case: str, tier: str, downgraded: bool) -> str:
    if downgraded:
        return f"Optimized for cost-effectiveness while maintaining good {use_case} for {tier} tier"
    if use_case == "speed":
        return f"Selected for fastest response time ({model.speed_score:g}/10)"
    if use_case == "quality":
        return f"Selected for highest quality output ({model.quality_score:g}/10)"
    return f"Selected for cost optimization ({model.cost_multiplier:g}x base cost)"
