"""
Governed OpenAI client wrapper.

Runs every chat completion through the governance flow: window check, budget
check, provider call, cost settlement and usage logging.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Union

from openai import OpenAI

from ..config.loader import GovernorConfig, WindowConfig
from ..core.aggregator import UsageAggregator
from ..core.cost_limiter import CostLimitResult, TieredCostLimiter
from ..core.pricing import calculate_cost
from ..core.window_counter import WindowCheckResult, WindowCounter
from ..storage.base import GovernanceStore, StorageUnavailableError, UsageArchive
from ..storage.models import UsageRecord

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "/api/ai/text"


class AdmissionDenied(Exception):
    """Raised when the window counter or the cost limiter rejects a request."""
    def __init__(self, message: str, result: Union[WindowCheckResult, CostLimitResult]):
        super().__init__(message)
        self.result = result

    @property
    def retry_after_seconds(self) -> Optional[int]:
        return self.result.retry_after_seconds


class GovernedOpenAI:
    """OpenAI client wrapper enforcing rate and cost limits.

    Provider failures are recorded in the usage log with their status code
    and zero cost, then re-raised unchanged.
    """

    def __init__(
        self,
        model: str,
        action: str,
        counter: WindowCounter,
        limiter: TieredCostLimiter,
        aggregator: UsageAggregator,
        window: WindowConfig,
        endpoint: str = DEFAULT_ENDPOINT,
        fail_open: bool = True,
        client: Optional[OpenAI] = None,
    ):
        """Initialize governed OpenAI client.

        Args:
            model: OpenAI model name (required)
            action: Action / action class the calls are limited under (required)
            counter: Window counter for burst protection
            limiter: Cost limiter for budget admission
            aggregator: Usage aggregator every attempt is reported to
            window: Window limit for ``action``
            endpoint: Endpoint recorded in usage records
            fail_open: Admit requests when the governance store is unavailable
            client: OpenAI client; a default one is created if omitted

        Raises:
            ValueError: If model or action is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not action or not action.strip():
            raise ValueError("action is required and cannot be empty")

        self.model = model
        self.action = action
        self.counter = counter
        self.limiter = limiter
        self.aggregator = aggregator
        self.window = window
        self.endpoint = endpoint
        self.fail_open = fail_open
        self.client = client or OpenAI()

    @classmethod
    def from_config(
        cls,
        model: str,
        action: str,
        config: GovernorConfig,
        store: GovernanceStore,
        archive: Optional[UsageArchive] = None,
        **kwargs: Any
    ) -> "GovernedOpenAI":
        """Build a client whose limiters and usage buffer follow ``config``.

        Raises:
            KeyError: If no rate limit is configured for ``action``
        """
        return cls(
            model=model,
            action=action,
            counter=WindowCounter(store, retention_seconds=config.window_retention_seconds),
            limiter=TieredCostLimiter(store, config.budget, config.models),
            aggregator=UsageAggregator.from_config(config.usage, pricing=config.pricing, archive=archive),
            window=config.get_rate_limit(action),
            **kwargs
        )

    def chat(
        self,
        subject: str,
        messages: List[Dict[str, str]],
        tier: str = "free",
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion if the subject is within its limits.

        Args:
            subject: Identity the limits are tracked against
            messages: List of message dictionaries (required)
            tier: Subject's service tier
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty
            AdmissionDenied: If a rate or budget limit rejects the request
            StorageUnavailableError: If the store fails and fail_open is False
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        pricing = self.aggregator.pricing
        estimated_cost = calculate_cost(
            self.endpoint, pricing, model=self.model,
            tokens=max_tokens if max_tokens is not None else pricing.default_tokens,
        )
        self._admit(subject, tier, estimated_cost)

        started = time.monotonic()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except Exception as e:
            status_code = getattr(e, "status_code", None) or 500
            self._report(subject, started, status_code, tokens=None, cost=0.0)
            raise

        usage = getattr(response, "usage", None)
        tokens = usage.total_tokens if usage else None
        cost = calculate_cost(self.endpoint, pricing, model=self.model, tokens=tokens)

        self._guarded(self.limiter.record_usage, subject, self.action, cost, tier)
        self._report(subject, started, 200, tokens=tokens, cost=cost)
        return response

    def _admit(self, subject: str, tier: str, estimated_cost: float) -> None:
        window_result = self._guarded(self.counter.check, subject, self.action, self.window)
        if window_result is not None and not window_result.allowed:
            raise AdmissionDenied(
                f"Rate limit exceeded for {self.action}; retry in {window_result.retry_after_seconds}s",
                window_result,
            )

        cost_result = self._guarded(
            self.limiter.check_limit, subject, self.action, estimated_cost, tier
        )
        if cost_result is not None and not cost_result.allowed:
            raise AdmissionDenied(
                f"Budget exceeded for {self.action}: ${cost_result.cost_used:.4f} "
                f"of ${cost_result.cost_limit:.4f} used",
                cost_result,
            )

        self._guarded(self.counter.increment, subject, self.action, self.window)

    def _report(
        self,
        subject: str,
        started: float,
        status_code: int,
        tokens: Optional[int],
        cost: float,
    ) -> None:
        record = UsageRecord(
            subject=subject,
            endpoint=self.endpoint,
            method="POST",
            timestamp=self.aggregator.clock(),
            response_time_ms=(time.monotonic() - started) * 1000,
            status_code=status_code,
            model=self.model,
            tokens=tokens,
            cost=cost,
        )
        self._guarded(self.aggregator.log_usage, record)

    def _guarded(self, operation, *args):
        """Run a governance call, failing open on storage errors if configured."""
        try:
            return operation(*args)
        except StorageUnavailableError as e:
            if not self.fail_open:
                raise
            logger.error("Governance storage unavailable, failing open: %s", e)
            return None
