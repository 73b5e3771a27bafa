"""Tests for the day-ahead setpoint plan."""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from poolheat.control.schedule import plan_schedule
from poolheat.models import AutomationSettings, DecisionOutcome, PriceClassification


@pytest.fixture
def settings(automation) -> AutomationSettings:
    return replace(automation, anti_short_cycle_minutes=45, max_change_per_hour=Decimal("0"))


@pytest.fixture
def history(make_points, now_dt):
    """A day at 1.00, then 0.50 / 1.00 / 2.00 / 1.00 from the hour containing now_dt."""
    hour = now_dt.replace(minute=0)
    return make_points(hour - timedelta(hours=24), ["1.00"] * 24 + ["0.50", "1.00", "2.00", "1.00"])


class TestPlanSchedule:
    def test_hourly_plan_follows_decision_rules(self, history, now_dt, settings) -> None:
        entries = plan_schedule(history, now_dt, settings, Decimal("28"), None)

        assert [e.start for e in entries] == [p.start for p in history[-4:]]
        assert [e.classification for e in entries] == [
            PriceClassification.LOW,
            PriceClassification.NORMAL,
            PriceClassification.HIGH,
            PriceClassification.NORMAL,
        ]
        assert [e.outcome for e in entries] == [
            DecisionOutcome.APPLIED,
            DecisionOutcome.SKIPPED_ANTI_CYCLE,
            DecisionOutcome.APPLIED,
            DecisionOutcome.APPLIED,
        ]
        assert [e.setpoint for e in entries] == [
            Decimal("30"),
            Decimal("30"),
            Decimal("26"),
            Decimal("28"),
        ]
        assert not any(e.shutdown for e in entries)

    def test_shutdown_hours_planned_off(self, history, now_dt, settings) -> None:
        settings = replace(settings, shutdown_price_threshold=Decimal("1.50"))

        entries = plan_schedule(history, now_dt, settings, Decimal("28"), None)

        assert [e.shutdown for e in entries] == [False, False, True, False]
        assert entries[2].setpoint is None
        assert "shutdown threshold 1.50" in entries[2].reason
        assert entries[3].setpoint == Decimal("28")

    def test_horizon_limits_entries(self, history, now_dt, settings) -> None:
        entries = plan_schedule(history, now_dt, settings, Decimal("28"), None, hours=2)

        assert len(entries) == 3

    def test_recent_change_carried_into_plan(self, history, now_dt, settings) -> None:
        last_change = now_dt.timestamp() - 60

        entries = plan_schedule(history, now_dt, settings, Decimal("28"), last_change)

        assert entries[0].outcome == DecisionOutcome.SKIPPED_ANTI_CYCLE
        assert entries[0].setpoint == Decimal("28")

    def test_no_upcoming_prices(self, make_points, now_dt, settings) -> None:
        past = make_points(now_dt - timedelta(hours=30), ["1.00"] * 24)

        assert plan_schedule(past, now_dt, settings, Decimal("28"), None) == []
