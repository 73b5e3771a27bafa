"""Tests for AutomationSettings validation and its dict conversion."""

from dataclasses import replace
from decimal import Decimal

import pytest

from poolheat.config import AutomationDefaults
from poolheat.exceptions import InvalidSettingsError
from poolheat.models import (
    AutomationSettings,
    ClassificationMethod,
    DecisionOutcome,
    DecisionRecord,
    PriceClassification,
    settings_from_dict,
    settings_to_dict,
)


class TestAutomationSettings:
    def test_defaults_are_consistent(self) -> None:
        settings = AutomationSettings()

        assert settings.min_temp <= settings.target_base_temp <= settings.max_temp

    def test_min_above_max_rejected(self) -> None:
        with pytest.raises(InvalidSettingsError, match="min_temp"):
            AutomationSettings(min_temp=Decimal("33"), max_temp=Decimal("32"))

    def test_base_outside_bounds_rejected(self) -> None:
        with pytest.raises(InvalidSettingsError, match="target_base_temp"):
            AutomationSettings(target_base_temp=Decimal("35"))

    def test_negative_hysteresis_rejected(self) -> None:
        with pytest.raises(InvalidSettingsError, match="hysteresis"):
            AutomationSettings(hysteresis=Decimal("-0.1"))

    def test_percentiles_must_be_ordered(self) -> None:
        with pytest.raises(InvalidSettingsError, match="percentile"):
            AutomationSettings(percentile_low=Decimal("70"), percentile_high=Decimal("30"))

    def test_defaults_from_environment_settings(self) -> None:
        assert AutomationDefaults().to_automation_settings() == AutomationSettings()


class TestSettingsDict:
    def test_to_dict_is_json_safe(self) -> None:
        data = settings_to_dict(AutomationSettings(shutdown_price_threshold=Decimal("3.5")))

        assert data["target_base_temp"] == "28"
        assert data["classification_method"] == "delta"
        assert data["shutdown_price_threshold"] == "3.5"
        assert data["enabled"] is True

    def test_partial_update_over_base(self) -> None:
        base = AutomationSettings(min_temp=Decimal("20"))

        updated = settings_from_dict(
            {"low_offset": 3, "classification_method": "percentile", "anti_short_cycle_minutes": "45"},
            base,
        )

        assert updated.low_offset == Decimal("3")
        assert updated.classification_method == ClassificationMethod.PERCENTILE
        assert updated.anti_short_cycle_minutes == 45
        assert updated.min_temp == Decimal("20")

    def test_threshold_can_be_cleared(self) -> None:
        base = AutomationSettings(shutdown_price_threshold=Decimal("3"))

        assert settings_from_dict({"shutdown_price_threshold": None}, base).shutdown_price_threshold is None

    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(InvalidSettingsError, match="unknown settings: colour"):
            settings_from_dict({"colour": "blue"})

    def test_null_rejected(self) -> None:
        with pytest.raises(InvalidSettingsError, match="max_temp must not be null"):
            settings_from_dict({"max_temp": None})

    @pytest.mark.parametrize("data", [{"hysteresis": "warm"}, {"classification_method": "median"}])
    def test_unparsable_value_rejected(self, data: dict) -> None:
        with pytest.raises(InvalidSettingsError):
            settings_from_dict(data)

    def test_inconsistent_bounds_rejected(self) -> None:
        with pytest.raises(InvalidSettingsError):
            settings_from_dict({"min_temp": "30", "max_temp": "29"})


class TestDecisionRecord:
    def _record(self, **kwargs) -> DecisionRecord:
        fields = dict(
            timestamp=0.0,
            price=None,
            classification=PriceClassification.LOW,
            previous_setpoint=Decimal("28"),
            proposed_setpoint=Decimal("30"),
            applied_setpoint=None,
            reason="",
            outcome=DecisionOutcome.APPLIED,
        )
        fields.update(kwargs)
        return DecisionRecord(**fields)

    def test_applied_change_is_dispatchable(self) -> None:
        assert self._record().changes_setpoint is True

    def test_rate_limited_step_is_dispatchable(self) -> None:
        record = self._record(outcome=DecisionOutcome.SKIPPED_RATE_LIMIT, proposed_setpoint=Decimal("29.0"))

        assert record.changes_setpoint is True

    def test_same_value_not_dispatchable(self) -> None:
        assert self._record(proposed_setpoint=Decimal("28.0")).changes_setpoint is False

    def test_records_are_immutable(self) -> None:
        record = self._record()

        assert replace(record, reason="x").id == record.id
        with pytest.raises(AttributeError):
            record.reason = "changed"  # type: ignore[misc]
