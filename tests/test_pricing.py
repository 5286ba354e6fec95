from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import pytest

from axon_engine.errors import CostLimitError
from axon_engine.pricing import CostTracker, calculate_cost


def test_calculate_cost_uses_model_rates() -> None:
    assert calculate_cost("gpt-4o", 1_000_000, 1_000_000) == pytest.approx(20.0)
    assert calculate_cost("claude-opus-4-6", 2000, 1000) == pytest.approx(0.105)
    assert calculate_cost("glm-4.7-free", 50_000, 50_000) == 0.0


def test_unknown_model_uses_default_rate() -> None:
    assert calculate_cost("some-new-model", 1_000_000, 0) == pytest.approx(3.0)


def test_check_limit_counts_todays_usage_only() -> None:
    now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    tracker = CostTracker(daily_token_limit=10_000, clock=lambda: now)
    tracker.record_usage("gpt-4o", 6000, 2000)

    tracker.check_limit(2000)
    with pytest.raises(CostLimitError) as excinfo:
        tracker.check_limit(2001)
    assert excinfo.value.current_usage == 8000
    assert "Used today: 8,000 tokens" in excinfo.value.format()

    now += timedelta(days=1)
    tracker.check_limit(10_000)
    assert tracker.daily_tokens() == 0


def test_record_usage_prefers_reported_cost_and_alerts(caplog: pytest.LogCaptureFixture) -> None:
    tracker = CostTracker(daily_token_limit=1_000_000, cost_alert_threshold_usd=1.0)
    with caplog.at_level(logging.WARNING, logger="axon_engine.pricing"):
        assert tracker.record_usage("gpt-4o", 1000, 0, cost=2.5) == 2.5
    assert "High single-call cost" in caplog.text

    stats = tracker.statistics()
    assert stats["total_tokens"] == 1000
    assert stats["total_cost"] == 2.5
    assert stats["remaining_tokens"] == 999_000

    tracker.reset()
    assert tracker.daily_cost() == 0
