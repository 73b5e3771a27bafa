"""Tests for the setpoint decision engine.

Covers the fixed rule precedence (disabled -> clamp -> hysteresis ->
anti-short-cycle -> rate limit), emergency handling and the bounds check.
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from poolheat.control.decision import (
    allowed_step,
    check_bounds,
    clamp,
    decide_setpoint,
    naive_target,
)
from poolheat.exceptions import SetpointBoundsViolation
from poolheat.models import (
    AutomationSettings,
    DecisionOutcome,
    PriceClassification,
    SourceKind,
)

NOW = 1_700_000_000.0
LOW = PriceClassification.LOW
NORMAL = PriceClassification.NORMAL
HIGH = PriceClassification.HIGH


@pytest.fixture
def settings() -> AutomationSettings:
    return AutomationSettings(
        target_base_temp=Decimal("28"),
        min_temp=Decimal("20"),
        max_temp=Decimal("32"),
        low_offset=Decimal("2"),
        high_offset=Decimal("2"),
        hysteresis=Decimal("0.5"),
        anti_short_cycle_minutes=30,
        max_change_per_hour=Decimal("0"),
    )


class TestNaiveTargetAndClamp:
    def test_targets_per_classification(self, settings: AutomationSettings) -> None:
        assert naive_target(LOW, settings) == Decimal("30")
        assert naive_target(NORMAL, settings) == Decimal("28")
        assert naive_target(HIGH, settings) == Decimal("26")

    def test_clamp(self) -> None:
        assert clamp(Decimal("35"), Decimal("20"), Decimal("32")) == Decimal("32")
        assert clamp(Decimal("10"), Decimal("20"), Decimal("32")) == Decimal("20")
        assert clamp(Decimal("25"), Decimal("20"), Decimal("32")) == Decimal("25")


class TestDecideSetpoint:
    def test_low_price_raises_setpoint(self, settings: AutomationSettings) -> None:
        record = decide_setpoint(LOW, settings, Decimal("28"), None, NOW, price=Decimal("0.80"))

        assert record.outcome == DecisionOutcome.APPLIED
        assert record.proposed_setpoint == Decimal("30")
        assert record.applied_setpoint is None
        assert record.price == Decimal("0.80")

    def test_disabled_short_circuits(self, settings: AutomationSettings) -> None:
        record = decide_setpoint(
            LOW, replace(settings, enabled=False), Decimal("28"), None, NOW
        )

        assert record.outcome == DecisionOutcome.SKIPPED_NO_CHANGE
        assert record.reason == "automation disabled"
        assert record.proposed_setpoint == Decimal("28")

    def test_target_clamped_to_max(self, settings: AutomationSettings) -> None:
        settings = replace(settings, low_offset=Decimal("10"))

        record = decide_setpoint(LOW, settings, Decimal("28"), None, NOW)

        assert record.proposed_setpoint == Decimal("32")
        assert "clamped from 38" in record.reason

    def test_within_hysteresis_never_changes(self) -> None:
        settings = AutomationSettings(
            target_base_temp=Decimal("28.2"),
            low_offset=Decimal("2"),
            hysteresis=Decimal("0.4"),
        )

        record = decide_setpoint(LOW, settings, Decimal("30"), None, NOW)

        assert record.outcome == DecisionOutcome.SKIPPED_NO_CHANGE
        assert record.proposed_setpoint == Decimal("30")
        assert "hysteresis" in record.reason

    def test_hysteresis_boundary_is_a_change(self, settings: AutomationSettings) -> None:
        record = decide_setpoint(NORMAL, settings, Decimal("27.5"), None, NOW)

        assert record.outcome == DecisionOutcome.APPLIED
        assert record.proposed_setpoint == Decimal("28")

    def test_anti_short_cycle(self, settings: AutomationSettings) -> None:
        record = decide_setpoint(LOW, settings, Decimal("28"), NOW - 10 * 60, NOW)

        assert record.outcome == DecisionOutcome.SKIPPED_ANTI_CYCLE
        assert record.proposed_setpoint == Decimal("28")
        assert "anti-short-cycle requires 30 min" in record.reason

    def test_anti_short_cycle_elapsed(self, settings: AutomationSettings) -> None:
        record = decide_setpoint(LOW, settings, Decimal("28"), NOW - 31 * 60, NOW)

        assert record.outcome == DecisionOutcome.APPLIED

    def test_hysteresis_takes_precedence_over_anti_cycle(self, settings: AutomationSettings) -> None:
        record = decide_setpoint(NORMAL, settings, Decimal("28.2"), NOW - 60, NOW)

        assert record.outcome == DecisionOutcome.SKIPPED_NO_CHANGE

    def test_rate_limit_partial_step(self, settings: AutomationSettings) -> None:
        settings = replace(settings, max_change_per_hour=Decimal("1"))

        record = decide_setpoint(HIGH, settings, Decimal("30"), NOW - 3600, NOW)

        assert record.outcome == DecisionOutcome.SKIPPED_RATE_LIMIT
        assert record.proposed_setpoint == Decimal("29.0")
        assert "rate limited" in record.reason

    def test_rate_limit_rounds_toward_current(self, settings: AutomationSettings) -> None:
        settings = replace(settings, max_change_per_hour=Decimal("1"), anti_short_cycle_minutes=0)

        # 45 minutes -> 0.75 degrees allowed, rounded down to 0.7
        record = decide_setpoint(LOW, settings, Decimal("28"), NOW - 45 * 60, NOW)

        assert record.proposed_setpoint == Decimal("28.7")

    def test_rate_limit_without_history_allows_one_hour(self, settings: AutomationSettings) -> None:
        settings = replace(settings, max_change_per_hour=Decimal("2"))

        record = decide_setpoint(HIGH, settings, Decimal("30"), None, NOW)

        assert record.outcome == DecisionOutcome.SKIPPED_RATE_LIMIT
        assert record.proposed_setpoint == Decimal("28.0")

    def test_rate_limit_disabled_by_zero(self, settings: AutomationSettings) -> None:
        assert allowed_step(settings, NOW - 60, NOW) is None

    def test_emergency_bypasses_anti_cycle_and_rate_limit(self, settings: AutomationSettings) -> None:
        settings = replace(settings, max_change_per_hour=Decimal("0.5"))

        record = decide_setpoint(LOW, settings, Decimal("28"), NOW - 60, NOW, emergency=True)

        assert record.outcome == DecisionOutcome.APPLIED
        assert record.proposed_setpoint == Decimal("30")
        assert record.emergency is True
        assert record.reason.startswith("emergency: ")

    def test_out_of_bounds_current_corrected_as_emergency(self, settings: AutomationSettings) -> None:
        record = decide_setpoint(NORMAL, settings, Decimal("35"), NOW - 60, NOW)

        assert record.outcome == DecisionOutcome.APPLIED
        assert record.emergency is True
        assert record.proposed_setpoint == Decimal("28")

    def test_unknown_current_setpoint_applies_target(self, settings: AutomationSettings) -> None:
        record = decide_setpoint(
            HIGH, settings, None, None, NOW, status_source=SourceKind.CACHED
        )

        assert record.outcome == DecisionOutcome.APPLIED
        assert record.proposed_setpoint == Decimal("26")
        assert record.status_source == SourceKind.CACHED
        assert record.changes_setpoint

    def test_unknown_current_setpoint_respects_anti_cycle(self, settings: AutomationSettings) -> None:
        record = decide_setpoint(LOW, settings, None, NOW - 60, NOW)

        assert record.outcome == DecisionOutcome.SKIPPED_ANTI_CYCLE
        assert record.proposed_setpoint is None
        assert not record.changes_setpoint
        assert record.reason.startswith("current setpoint unknown: ")
        assert "anti-short-cycle requires 30 min" in record.reason

    def test_unknown_current_setpoint_skips_rate_limit(self, settings: AutomationSettings) -> None:
        settings = replace(settings, max_change_per_hour=Decimal("0.5"))

        record = decide_setpoint(LOW, settings, None, NOW - 31 * 60, NOW)

        assert record.outcome == DecisionOutcome.APPLIED
        assert record.proposed_setpoint == Decimal("30")

    @pytest.mark.parametrize(
        "classification,current",
        [(LOW, "20"), (LOW, "31.9"), (HIGH, "32"), (NORMAL, "26.1"), (HIGH, "21")],
    )
    def test_proposed_always_within_bounds(
        self, settings: AutomationSettings, classification: PriceClassification, current: str
    ) -> None:
        settings = replace(settings, low_offset=Decimal("8"), high_offset=Decimal("9"))

        record = decide_setpoint(classification, settings, Decimal(current), None, NOW)

        assert settings.min_temp <= record.proposed_setpoint <= settings.max_temp


class TestCheckBounds:
    def test_accepts_in_bounds(self, settings: AutomationSettings) -> None:
        record = decide_setpoint(LOW, settings, Decimal("28"), None, NOW)

        check_bounds(record, settings)

    def test_raises_for_out_of_bounds_write(self, settings: AutomationSettings) -> None:
        record = replace(
            decide_setpoint(LOW, settings, Decimal("28"), None, NOW),
            proposed_setpoint=Decimal("40"),
        )

        with pytest.raises(SetpointBoundsViolation):
            check_bounds(record, settings)

    def test_ignores_non_dispatchable_records(self, settings: AutomationSettings) -> None:
        record = replace(
            decide_setpoint(LOW, settings, Decimal("28"), NOW - 60, NOW),
            proposed_setpoint=Decimal("40"),
        )

        assert record.outcome == DecisionOutcome.SKIPPED_ANTI_CYCLE
        check_bounds(record, settings)
