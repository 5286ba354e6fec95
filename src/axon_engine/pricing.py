from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from .errors import CostLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ModelRate:
    """USD per one million tokens."""

    input: float
    output: float


MODEL_PRICING: dict[str, ModelRate] = {
    "claude-sonnet-4-20250514": ModelRate(3.0, 15.0),
    "claude-opus-4-5-20251101": ModelRate(15.0, 75.0),
    "claude-opus-4-6": ModelRate(15.0, 75.0),
    "gemini-2.0-flash-exp": ModelRate(0.5, 0.5),
    "gemini-3-pro": ModelRate(1.25, 3.75),
    "gemini-3-flash": ModelRate(0.1, 0.4),
    "gpt-4-turbo": ModelRate(10.0, 30.0),
    "gpt-4o": ModelRate(5.0, 15.0),
    "gpt-5.3-codex": ModelRate(10.0, 30.0),
    "gpt-5-nano": ModelRate(0.5, 1.5),
    "glm-4.7-free": ModelRate(0.0, 0.0),
}

DEFAULT_RATE = ModelRate(3.0, 15.0)


def rate_for(model: str) -> ModelRate:
    return MODEL_PRICING.get(model, DEFAULT_RATE)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    rate = rate_for(model)
    return (input_tokens / 1_000_000) * rate.input + (output_tokens / 1_000_000) * rate.output


@dataclass(frozen=True, slots=True)
class UsageRecord:
    model: str
    tokens: int
    cost: float
    timestamp: datetime


class CostTracker:
    """In-process daily token accounting with a hard limit and a per-call cost alert."""

    def __init__(
        self,
        *,
        daily_token_limit: int,
        cost_alert_threshold_usd: float = 1.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.daily_token_limit = daily_token_limit
        self.cost_alert_threshold_usd = cost_alert_threshold_usd
        self._clock = clock or (lambda: datetime.now(UTC))
        self._records: list[UsageRecord] = []

    def _today_records(self) -> list[UsageRecord]:
        today = self._clock().date()
        return [record for record in self._records if record.timestamp.date() == today]

    def daily_tokens(self) -> int:
        return sum(record.tokens for record in self._today_records())

    def daily_cost(self) -> float:
        return sum(record.cost for record in self._today_records())

    def check_limit(self, estimated_tokens: int) -> None:
        """Raise ``CostLimitError`` if today's usage plus *estimated_tokens* exceeds the limit."""
        used = self.daily_tokens()
        if used + estimated_tokens > self.daily_token_limit:
            raise CostLimitError(self.daily_token_limit, used, estimated_tokens)

    def record_usage(self, model: str, input_tokens: int, output_tokens: int = 0, cost: float | None = None) -> float:
        """Record one call and return its cost. A provider-reported *cost* takes precedence."""
        tokens = input_tokens + output_tokens
        actual = cost if cost is not None else calculate_cost(model, input_tokens, output_tokens)
        self._records.append(UsageRecord(model=model, tokens=tokens, cost=actual, timestamp=self._clock()))
        if actual > self.cost_alert_threshold_usd:
            logger.warning("High single-call cost: $%.4f (%s, %d tokens)", actual, model, tokens)
        return actual

    def statistics(self) -> dict[str, object]:
        records = self._today_records()
        by_model: dict[str, dict[str, float]] = {}
        for record in records:
            entry = by_model.setdefault(record.model, {"tokens": 0, "cost": 0.0})
            entry["tokens"] += record.tokens
            entry["cost"] += record.cost
        total_tokens = sum(record.tokens for record in records)
        return {
            "total_tokens": total_tokens,
            "total_cost": sum(record.cost for record in records),
            "by_model": by_model,
            "remaining_tokens": self.daily_token_limit - total_tokens,
        }

    def reset(self) -> None:
        self._records.clear()
