"""Shared test fixtures for the heat pump controller."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from poolheat.config import ControlSettings, QuotaSettings
from poolheat.device.simulated import SimulatedHeatPump
from poolheat.models import AutomationSettings, Currency, PricePoint


def _make_points(
    start: datetime,
    values: list[str],
    step: timedelta = timedelta(hours=1),
    currency: Currency = Currency.SEK,
) -> list[PricePoint]:
    """Consecutive price points of length ``step`` starting at ``start``."""
    return [
        PricePoint(
            start=start + i * step,
            end=start + (i + 1) * step,
            value=Decimal(v),
            currency=currency,
        )
        for i, v in enumerate(values)
    ]


@pytest.fixture
def make_points():
    """Factory for consecutive price points: make_points(start, values, step=1h)."""
    return _make_points


@pytest.fixture
def now_dt() -> datetime:
    return datetime(2025, 6, 10, 12, 30, tzinfo=UTC)


@pytest.fixture
def automation() -> AutomationSettings:
    """Defaults with bounds 20..32 (base 28, offsets 2)."""
    return AutomationSettings(min_temp=Decimal("20"), max_temp=Decimal("32"))


@pytest.fixture
def control_settings() -> ControlSettings:
    """Short verification window; sleeps are patched out where they matter."""
    return ControlSettings(
        cycle_budget_seconds=30.0,
        verification_window_seconds=0.2,
        verification_poll_seconds=0.1,
        backoff_base_seconds=0.01,
        write_max_attempts=2,
        price_fetch_timeout_seconds=1.0,
    )


@pytest.fixture
def quota_settings() -> QuotaSettings:
    return QuotaSettings(max_calls_per_window=5, window_seconds=3600.0, min_interval_seconds=0.0)


@pytest.fixture
def pump() -> SimulatedHeatPump:
    return SimulatedHeatPump(device_id="hp-test", setpoint=Decimal("28"), measured_temp=Decimal("26"))
