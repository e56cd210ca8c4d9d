"""
AI generation cost tracking.

Costs are accumulated per day in cache hashes as integer cents so repeated
increments never drift. Each call updates three scopes: the user, the
project (when given) and the global total.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, List, Any, Callable

from ..storage.cache import CacheStore
from ..utils.errors import InvalidParameterError
from ..utils.logging import get_logger
from ..utils.metrics import MetricsCollector, get_metrics_collector

logger = get_logger("usage-analytics.analytics.costs")

COST_PREFIX = "analytics:costs"

# USD per 1M tokens
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "claude-3-opus": {"input": 15.0, "output": 75.0},
    "claude-3-sonnet": {"input": 3.0, "output": 15.0},
    "claude-3-haiku": {"input": 0.25, "output": 1.25},
    "claude-3.5-sonnet": {"input": 3.0, "output": 15.0},
    "claude-3.5-haiku": {"input": 0.8, "output": 4.0},
    "default": {"input": 3.0, "output": 15.0},
}

PERIOD_DAYS: Dict[str, int] = {
    "day": 1,
    "week": 7,
    "month": 30,
    "quarter": 90,
    "year": 365,
}

_MODEL_FIELD = re.compile(r"^model:(.+):(cents|inputTokens|outputTokens)$")


def to_cents(amount: float) -> int:
    """Dollars to whole cents, half away from zero."""
    cents = abs(amount) * 100
    rounded = int(cents + 0.5)
    return rounded if amount >= 0 else -rounded


@dataclass
class CostBreakdown:
    """Aggregated spend over a period, in dollars."""
    total_cost: float = 0.0
    input_cost: float = 0.0
    output_cost: float = 0.0
    by_model: Dict[str, Dict[str, float]] = field(default_factory=dict)
    daily: List[Dict[str, Any]] = field(default_factory=list)
    projected_monthly: float = 0.0
    days_with_data: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalCost": self.total_cost,
            "inputCost": self.input_cost,
            "outputCost": self.output_cost,
            "byModel": {m: dict(v) for m, v in self.by_model.items()},
            "daily": list(self.daily),
            "projectedMonthly": self.projected_monthly,
            "daysWithData": self.days_with_data,
        }


@dataclass
class TrackedCost:
    """Result of a single ``track_cost`` call."""
    model: str
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost

    @property
    def total_cents(self) -> int:
        return to_cents(self.total_cost)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "inputCost": self.input_cost,
            "outputCost": self.output_cost,
            "totalCost": self.total_cost,
            "totalCents": self.total_cents,
        }


class CostMonitor:
    """Tracks and reports token spend."""

    def __init__(
        self,
        cache: CacheStore,
        ttl_days: int = 90,
        clock: Optional[Callable[[], datetime]] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.cache = cache
        self.ttl_seconds = ttl_days * 24 * 60 * 60
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.metrics = metrics or get_metrics_collector()

    @staticmethod
    def get_model_pricing(model: Optional[str] = None) -> Dict[str, Any]:
        """Price table, or the effective rates for one model."""
        if model is None:
            return {name: dict(rates) for name, rates in MODEL_PRICING.items()}
        return dict(MODEL_PRICING.get(model, MODEL_PRICING["default"]))

    @staticmethod
    def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> TrackedCost:
        pricing = MODEL_PRICING.get(model, MODEL_PRICING["default"])
        return TrackedCost(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            input_cost=input_tokens / 1_000_000 * pricing["input"],
            output_cost=output_tokens / 1_000_000 * pricing["output"],
        )

    @staticmethod
    def _day_key(day: datetime) -> str:
        return day.strftime("%Y-%m-%d")

    def _scope_key(self, scope: str, scope_id: Optional[str], day: str) -> str:
        if scope_id is None:
            return f"{COST_PREFIX}:{scope}:{day}"
        return f"{COST_PREFIX}:{scope}:{scope_id}:{day}"

    async def track_cost(
        self,
        user_id: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        project_id: Optional[str] = None
    ) -> TrackedCost:
        """
        Record one model call.

        Args:
            user_id: User that triggered the call
            model: Model name; unknown models use the default rates
            input_tokens: Prompt tokens
            output_tokens: Completion tokens
            project_id: Project the call belongs to, if any

        Returns:
            The computed cost of this call
        """
        if not user_id:
            raise InvalidParameterError("user_id is required")
        if input_tokens < 0 or output_tokens < 0:
            raise InvalidParameterError("Token counts must be non-negative")

        cost = self.calculate_cost(model, input_tokens, output_tokens)
        day = self._day_key(self.clock())
        fields = {
            "totalCents": cost.total_cents,
            "inputCents": to_cents(cost.input_cost),
            "outputCents": to_cents(cost.output_cost),
            "inputTokens": input_tokens,
            "outputTokens": output_tokens,
            f"model:{model}:cents": cost.total_cents,
            f"model:{model}:inputTokens": input_tokens,
            f"model:{model}:outputTokens": output_tokens,
        }

        keys = [
            self._scope_key("user", user_id, day),
            self._scope_key("global", None, day),
        ]
        if project_id:
            keys.append(self._scope_key("project", project_id, day))

        for key in keys:
            for name, amount in fields.items():
                await self.cache.hincrby(key, name, amount)
            await self.cache.expire(key, self.ttl_seconds)

        self.metrics.counter("cost_cents", cost.total_cents, {"model": model})
        logger.info(
            "cost_tracked",
            user_id=user_id,
            project_id=project_id,
            model=model,
            total_cents=cost.total_cents,
        )
        return cost

    async def _breakdown(self, scope: str, scope_id: Optional[str], period: str) -> CostBreakdown:
        if period not in PERIOD_DAYS:
            raise InvalidParameterError(
                f"Unknown period '{period}'; expected one of {', '.join(PERIOD_DAYS)}"
            )

        breakdown = CostBreakdown()
        total_cents = input_cents = output_cents = 0
        today = self.clock()

        # Oldest day first
        for offset in range(PERIOD_DAYS[period] - 1, -1, -1):
            day = self._day_key(today - timedelta(days=offset))
            values = await self.cache.hgetall(self._scope_key(scope, scope_id, day))
            if not values.get("totalCents"):
                continue

            breakdown.days_with_data += 1
            day_cents = int(values.get("totalCents", 0))
            total_cents += day_cents
            input_cents += int(values.get("inputCents", 0))
            output_cents += int(values.get("outputCents", 0))
            breakdown.daily.append({
                "date": day,
                "cost": day_cents / 100,
                "tokens": int(values.get("inputTokens", 0)) + int(values.get("outputTokens", 0)),
            })

            for name, value in values.items():
                match = _MODEL_FIELD.match(name)
                if not match:
                    continue
                model, kind = match.groups()
                entry = breakdown.by_model.setdefault(
                    model, {"totalCents": 0, "inputTokens": 0, "outputTokens": 0}
                )
                entry["totalCents" if kind == "cents" else kind] += int(value)

        for entry in breakdown.by_model.values():
            entry["totalCost"] = entry.pop("totalCents") / 100
        breakdown.total_cost = total_cents / 100
        breakdown.input_cost = input_cents / 100
        breakdown.output_cost = output_cents / 100
        if breakdown.days_with_data:
            breakdown.projected_monthly = breakdown.total_cost / breakdown.days_with_data * 30
        return breakdown

    async def get_user_costs(self, user_id: str, period: str = "month") -> CostBreakdown:
        return await self._breakdown("user", user_id, period)

    async def get_project_costs(self, project_id: str, period: str = "month") -> CostBreakdown:
        return await self._breakdown("project", project_id, period)

    async def get_global_costs(self, period: str = "month") -> CostBreakdown:
        return await self._breakdown("global", None, period)

    async def check_budget_alert(self, user_id: str, budget: float) -> Dict[str, Any]:
        """Compare the user's spend over the last 30 days with ``budget`` dollars."""
        if budget <= 0:
            raise InvalidParameterError("budget must be positive")
        costs = await self.get_user_costs(user_id, "month")
        return {
            "exceeded": costs.total_cost >= budget,
            "current": costs.total_cost,
            "percentage": costs.total_cost / budget * 100,
        }
