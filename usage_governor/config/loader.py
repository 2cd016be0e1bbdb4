"""
Configuration management and loading.

Rate limits, tier budgets, model tables, pricing and alert thresholds are
read from a YAML file and validated up front, so a bad value is rejected at
load time and never surfaces in the request path.
"""

import math
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

CONTENT_TYPES = ("text", "image")


@dataclass(frozen=True)
class WindowConfig:
    """Fixed-window request limit for one action."""
    action: str
    window_ms: int
    max_requests: int

    def __post_init__(self):
        """Validate window values are positive."""
        if not self.action:
            raise ValueError("action cannot be empty")
        if self.window_ms <= 0:
            raise ValueError(f"window_ms for '{self.action}' must be > 0")
        if self.max_requests <= 0:
            raise ValueError(f"max_requests for '{self.action}' must be > 0")

    @property
    def window_length(self) -> timedelta:
        return timedelta(milliseconds=self.window_ms)


@dataclass(frozen=True)
class TierBudget:
    """Spending limits for one service tier."""
    name: str
    default_budget: float
    budgets: Dict[str, float] = field(default_factory=dict)
    prefer_cost_effective: bool = False

    def __post_init__(self):
        """Validate budgets are finite and non-negative."""
        if not math.isfinite(self.default_budget) or self.default_budget < 0:
            raise ValueError(f"default budget for tier '{self.name}' must be a finite, non-negative number")
        for action_class, budget in self.budgets.items():
            if not math.isfinite(budget) or budget < 0:
                raise ValueError(
                    f"budget for '{action_class}' in tier '{self.name}' must be a finite, non-negative number"
                )

    def budget_for(self, action_class: str) -> float:
        """Budget for an action class, falling back to the tier default."""
        return self.budgets.get(action_class, self.default_budget)


@dataclass(frozen=True)
class BudgetConfig:
    """Budget periods and per-tier limits for cost-based admission."""
    tiers: Dict[str, TierBudget]
    period_hours: float = 24.0
    admin_tiers: Tuple[str, ...] = ("admin",)
    warning_percent: float = 75.0
    critical_percent: float = 90.0

    def __post_init__(self):
        """Validate at least one tier, a positive period and ordered utilization levels."""
        if not self.tiers:
            raise ValueError("at least one tier must be configured")
        if self.period_hours <= 0:
            raise ValueError("period_hours must be > 0")
        if not 0 < self.warning_percent <= self.critical_percent <= 100:
            raise ValueError("budget levels must satisfy 0 < warning_percent <= critical_percent <= 100")

    @property
    def period(self) -> timedelta:
        return timedelta(hours=self.period_hours)

    @property
    def action_classes(self) -> Tuple[str, ...]:
        """Every action class with an explicit budget in any tier."""
        names = set()
        for tier in self.tiers.values():
            names.update(tier.budgets)
        return tuple(sorted(names))

    def resolve_tier(self, tier: Optional[str], action_class: Optional[str] = None) -> TierBudget:
        """Return the named tier, or the most restrictive one if unknown.

        "Most restrictive" is the tier with the smallest budget for the
        action class, or the smallest default budget when no action class is
        given; ties go to the lexicographically first tier name.
        """
        if tier in self.tiers:
            return self.tiers[tier]
        return min(
            self.tiers.values(),
            key=lambda t: (t.budget_for(action_class) if action_class else t.default_budget, t.name),
        )


@dataclass(frozen=True)
class ModelSpec:
    """Static characteristics of a generation model."""
    name: str
    cost_multiplier: float
    quality_score: float
    speed_score: float

    def __post_init__(self):
        """Validate model scores."""
        if self.cost_multiplier <= 0:
            raise ValueError(f"cost_multiplier for model '{self.name}' must be > 0")
        if self.quality_score < 0 or self.speed_score < 0:
            raise ValueError(f"scores for model '{self.name}' cannot be negative")


@dataclass(frozen=True)
class ModelTable:
    """Models available per content type."""
    text: Tuple[ModelSpec, ...]
    image: Tuple[ModelSpec, ...]

    def __post_init__(self):
        """Validate each content type has at least one model."""
        if not self.text:
            raise ValueError("at least one text model must be configured")
        if not self.image:
            raise ValueError("at least one image model must be configured")

    def models_for(self, content_type: str) -> Tuple[ModelSpec, ...]:
        """Get models for a content type.

        Raises:
            ValueError: If content type is not supported
        """
        if content_type == "text":
            return self.text
        if content_type == "image":
            return self.image
        raise ValueError(f"Unsupported content type: {content_type}")


@dataclass(frozen=True)
class PricingConfig:
    """Rates used to derive the cost of a usage record."""
    text_per_1k_tokens: float = 0.002
    default_tokens: int = 1000
    text_model_multipliers: Dict[str, float] = field(default_factory=lambda: {
        "nova-fast": 1.0,
        "nova-standard": 1.5,
        "nova-premium": 2.0,
    })
    default_text_model: str = "nova-fast"
    image_per_image: float = 0.02
    image_size_multipliers: Dict[str, float] = field(default_factory=lambda: {
        "256x256": 1.0,
        "512x512": 2.0,
        "1024x1024": 4.0,
    })
    default_image_size: str = "256x256"
    game_content_per_request: float = 0.01

    def __post_init__(self):
        """Validate rates are non-negative."""
        for name in ("text_per_1k_tokens", "image_per_image", "game_content_per_request"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        if self.default_tokens < 0:
            raise ValueError("default_tokens cannot be negative")
        for table in (self.text_model_multipliers, self.image_size_multipliers):
            for key, multiplier in table.items():
                if multiplier < 0:
                    raise ValueError(f"multiplier for '{key}' cannot be negative")


@dataclass(frozen=True)
class UsageBufferConfig:
    """Bounds of the in-process usage buffer."""
    capacity: int = 10000
    max_age_hours: float = 24.0

    def __post_init__(self):
        if self.capacity <= 0:
            raise ValueError("usage capacity must be > 0")
        if self.max_age_hours <= 0:
            raise ValueError("usage max_age_hours must be > 0")


@dataclass(frozen=True)
class AlertThresholds:
    """Thresholds evaluated over the last hour of usage."""
    cost_per_hour: float = 10.0
    error_rate: float = 0.05
    response_time_ms: float = 10000.0
    user_cost_per_hour: float = 5.0
    cooldown_minutes: float = 60.0

    def __post_init__(self):
        if self.cost_per_hour < 0 or self.user_cost_per_hour < 0:
            raise ValueError("cost thresholds cannot be negative")
        if not 0 <= self.error_rate <= 1:
            raise ValueError("error_rate threshold must be between 0 and 1")
        if self.response_time_ms < 0:
            raise ValueError("response_time_ms threshold cannot be negative")
        if self.cooldown_minutes < 0:
            raise ValueError("cooldown_minutes cannot be negative")


def _default_models() -> ModelTable:
    return ModelTable(
        text=(
            ModelSpec("nova-fast", cost_multiplier=1.0, quality_score=7, speed_score=9),
            ModelSpec("nova-standard", cost_multiplier=1.5, quality_score=8, speed_score=6),
            ModelSpec("nova-premium", cost_multiplier=2.0, quality_score=9, speed_score=4),
        ),
        image=(
            ModelSpec("zimage", cost_multiplier=1.0, quality_score=8, speed_score=7),
            ModelSpec("zimage-hd", cost_multiplier=2.0, quality_score=9, speed_score=5),
        ),
    )


@dataclass(frozen=True)
class GovernorConfig:
    """Complete governance configuration."""
    rate_limits: Dict[str, WindowConfig]
    budget: BudgetConfig
    window_retention_seconds: int = 3600
    models: ModelTable = field(default_factory=_default_models)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    usage: UsageBufferConfig = field(default_factory=UsageBufferConfig)
    alerts: AlertThresholds = field(default_factory=AlertThresholds)

    def __post_init__(self):
        if self.window_retention_seconds <= 0:
            raise ValueError("window_retention_seconds must be > 0")

    def get_rate_limit(self, action: str) -> WindowConfig:
        """Get the window limit for an action.

        Raises:
            KeyError: If no limit is configured for the action
        """
        if action not in self.rate_limits:
            raise KeyError(f"No rate limit configured for action: {action}")
        return self.rate_limits[action]


def default_config() -> GovernorConfig:
    """Built-in configuration matching the production service defaults."""
    rate_limits = {
        "game_generation": WindowConfig("game_generation", window_ms=60 * 60 * 1000, max_requests=20),
        "game_session_start": WindowConfig("game_session_start", window_ms=60 * 1000, max_requests=5),
        "ai_api_call": WindowConfig("ai_api_call", window_ms=60 * 1000, max_requests=10),
        "text_generation": WindowConfig("text_generation", window_ms=60 * 1000, max_requests=15),
        "image_generation": WindowConfig("image_generation", window_ms=60 * 1000, max_requests=10),
    }
    tiers = {
        "anonymous": TierBudget("anonymous", default_budget=0.10, prefer_cost_effective=True),
        "free": TierBudget("free", default_budget=0.50, prefer_cost_effective=True),
        "premium": TierBudget("premium", default_budget=5.00),
    }
    return GovernorConfig(
        rate_limits=rate_limits,
        budget=BudgetConfig(tiers=tiers, period_hours=1),
    )


def load_governor_config(path: str) -> GovernorConfig:
    """Load and validate governance configuration from YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys,
    missing required keys and out-of-range values are all rejected.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GovernorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Governor config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    return parse_governor_config(raw_config)


def parse_governor_config(raw_config: Dict[str, Any]) -> GovernorConfig:
    """Build a GovernorConfig from an already-parsed mapping.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _reject_unknown(raw_config, {
        'rate_limits', 'budget', 'window_retention_seconds',
        'models', 'pricing', 'usage', 'alerts',
    }, "configuration")

    if 'rate_limits' not in raw_config:
        raise ValueError("Missing required 'rate_limits' section")
    if 'budget' not in raw_config:
        raise ValueError("Missing required 'budget' section")

    rate_limits_data = _require_dict(raw_config['rate_limits'], "rate_limits")
    rate_limits = {
        action: _parse_window(action, _require_dict(data, f"rate_limits.{action}"))
        for action, data in rate_limits_data.items()
    }

    budget = _parse_budget(_require_dict(raw_config['budget'], "budget"))

    kwargs: Dict[str, Any] = {}
    if 'window_retention_seconds' in raw_config:
        kwargs['window_retention_seconds'] = int(
            _number(raw_config['window_retention_seconds'], "window_retention_seconds")
        )
    if 'models' in raw_config:
        kwargs['models'] = _parse_models(_require_dict(raw_config['models'], "models"))
    if 'pricing' in raw_config:
        kwargs['pricing'] = _parse_pricing(_require_dict(raw_config['pricing'], "pricing"))
    if 'usage' in raw_config:
        usage_data = _require_dict(raw_config['usage'], "usage")
        _reject_unknown(usage_data, {'capacity', 'max_age_hours'}, "usage")
        usage_kwargs: Dict[str, Any] = {}
        if 'capacity' in usage_data:
            usage_kwargs['capacity'] = int(_number(usage_data['capacity'], "usage.capacity"))
        if 'max_age_hours' in usage_data:
            usage_kwargs['max_age_hours'] = float(
                _number(usage_data['max_age_hours'], "usage.max_age_hours")
            )
        kwargs['usage'] = UsageBufferConfig(**usage_kwargs)
    if 'alerts' in raw_config:
        alerts_data = _require_dict(raw_config['alerts'], "alerts")
        _reject_unknown(alerts_data, {
            'cost_per_hour', 'error_rate', 'response_time_ms', 'user_cost_per_hour',
            'cooldown_minutes',
        }, "alerts")
        kwargs['alerts'] = AlertThresholds(**{
            key: float(_number(value, f"alerts.{key}")) for key, value in alerts_data.items()
        })

    return GovernorConfig(rate_limits=rate_limits, budget=budget, **kwargs)


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _require_dict(value: Any, path: str) -> Dict:
    if not isinstance(value, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return value


def _number(value: Any, path: str) -> float:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    if not math.isfinite(value):
        raise ValueError(f"'{path}' must be a finite number")
    return value


def _parse_window(action: str, data: Dict) -> WindowConfig:
    """Parse and validate one rate limit entry.

    Args:
        action: Action name the limit applies to
        data: Rate limit data

    Returns:
        Validated WindowConfig

    Raises:
        ValueError: If configuration is invalid
    """
    path = f"rate_limits.{action}"
    _reject_unknown(data, {'window_ms', 'max_requests'}, path)
    for key in ('window_ms', 'max_requests'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
    return WindowConfig(
        action=action,
        window_ms=int(_number(data['window_ms'], f"{path}.window_ms")),
        max_requests=int(_number(data['max_requests'], f"{path}.max_requests")),
    )


def _parse_budget(data: Dict) -> BudgetConfig:
    """Parse and validate the budget section.

    Raises:
        ValueError: If configuration is invalid
    """
    _reject_unknown(data, {
        'period_hours', 'tiers', 'admin_tiers', 'warning_percent', 'critical_percent',
    }, "budget")

    if 'tiers' not in data:
        raise ValueError("Missing required 'tiers' in budget")
    tiers_data = _require_dict(data['tiers'], "budget.tiers")

    tiers = {}
    for tier_name, tier_data in tiers_data.items():
        path = f"budget.tiers.{tier_name}"
        tier_data = _require_dict(tier_data, path)
        _reject_unknown(tier_data, {'default', 'actions', 'prefer_cost_effective'}, path)
        if 'default' not in tier_data:
            raise ValueError(f"Missing required 'default' in {path}")

        actions = _require_dict(tier_data.get('actions', {}), f"{path}.actions")
        prefer = tier_data.get('prefer_cost_effective', False)
        if not isinstance(prefer, bool):
            raise ValueError(f"'prefer_cost_effective' in {path} must be a boolean")

        tiers[tier_name] = TierBudget(
            name=tier_name,
            default_budget=float(_number(tier_data['default'], f"{path}.default")),
            budgets={
                action_class: float(_number(value, f"{path}.actions.{action_class}"))
                for action_class, value in actions.items()
            },
            prefer_cost_effective=prefer,
        )

    kwargs: Dict[str, Any] = {}
    if 'period_hours' in data:
        kwargs['period_hours'] = float(_number(data['period_hours'], "budget.period_hours"))
    for key in ('warning_percent', 'critical_percent'):
        if key in data:
            kwargs[key] = float(_number(data[key], f"budget.{key}"))
    if 'admin_tiers' in data:
        admin_tiers = data['admin_tiers']
        if not isinstance(admin_tiers, list) or not all(isinstance(t, str) for t in admin_tiers):
            raise ValueError("'budget.admin_tiers' must be a list of strings")
        kwargs['admin_tiers'] = tuple(admin_tiers)

    return BudgetConfig(tiers=tiers, **kwargs)


def _parse_models(data: Dict) -> ModelTable:
    _reject_unknown(data, set(CONTENT_TYPES), "models")

    defaults = _default_models()
    parsed = {}
    for content_type in CONTENT_TYPES:
        if content_type not in data:
            parsed[content_type] = defaults.models_for(content_type)
            continue
        entries = data[content_type]
        if not isinstance(entries, list):
            raise ValueError(f"'models.{content_type}' must be a list")
        specs = []
        for index, entry in enumerate(entries):
            path = f"models.{content_type}[{index}]"
            entry = _require_dict(entry, path)
            required = {'name', 'cost_multiplier', 'quality_score', 'speed_score'}
            _reject_unknown(entry, required, path)
            missing = required - set(entry.keys())
            if missing:
                raise ValueError(f"Missing required keys in {path}: {missing}")
            specs.append(ModelSpec(
                name=str(entry['name']),
                cost_multiplier=float(_number(entry['cost_multiplier'], f"{path}.cost_multiplier")),
                quality_score=float(_number(entry['quality_score'], f"{path}.quality_score")),
                speed_score=float(_number(entry['speed_score'], f"{path}.speed_score")),
            ))
        parsed[content_type] = tuple(specs)

    return ModelTable(text=parsed["text"], image=parsed["image"])


def _parse_pricing(data: Dict) -> PricingConfig:
    allowed = {
        'text_per_1k_tokens', 'default_tokens', 'text_model_multipliers',
        'default_text_model', 'image_per_image', 'image_size_multipliers',
        'default_image_size', 'game_content_per_request',
    }
    _reject_unknown(data, allowed, "pricing")

    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        path = f"pricing.{key}"
        if key in ('text_model_multipliers', 'image_size_multipliers'):
            table = _require_dict(value, path)
            kwargs[key] = {
                str(name): float(_number(multiplier, f"{path}.{name}"))
                for name, multiplier in table.items()
            }
        elif key in ('default_text_model', 'default_image_size'):
            if not isinstance(value, str):
                raise ValueError(f"'{path}' must be a string")
            kwargs[key] = value
        elif key == 'default_tokens':
            kwargs[key] = int(_number(value, path))
        else:
            kwargs[key] = float(_number(value, path))

    return PricingConfig(**kwargs)
