"""Shared data models for the price-driven setpoint controller.

CRITICAL: Prices and temperatures use Decimal. Never use float for setpoints --
hysteresis and epsilon comparisons must be exact (30.2 - 30 is 0.2, not 0.1999...).
Control-loop timestamps are Unix seconds (float); price points carry aware datetimes.
"""

import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from poolheat.exceptions import InvalidSettingsError


class Currency(str, Enum):
    """Currency a price is quoted in (per kWh)."""

    SEK = "SEK"
    EUR = "EUR"
    NOK = "NOK"
    DKK = "DKK"


class PriceClassification(str, Enum):
    """Current price relative to the rolling baseline."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class ClassificationMethod(str, Enum):
    """How the LOW/HIGH thresholds are derived from the baseline."""

    DELTA = "delta"
    PERCENTILE = "percentile"


class PowerState(str, Enum):
    """Reported power state of the heat pump."""

    ON = "on"
    OFF = "off"
    STANDBY = "standby"
    UNKNOWN = "unknown"


class SourceKind(str, Enum):
    """Where a DeviceStatus snapshot came from."""

    REALTIME = "realtime"
    POLLED = "polled"
    CACHED = "cached"


class DecisionOutcome(str, Enum):
    """Terminal outcome of a single control cycle."""

    APPLIED = "applied"
    SKIPPED_NO_CHANGE = "skipped_no_change"
    SKIPPED_ANTI_CYCLE = "skipped_anti_cycle"
    SKIPPED_RATE_LIMIT = "skipped_rate_limit"
    DEFERRED_QUOTA = "deferred_quota"
    FAILED = "failed"


class CommandKind(str, Enum):
    """Command the cycle wants to send to the device."""

    SET_SETPOINT = "set_setpoint"
    POWER_OFF = "power_off"
    POWER_ON = "power_on"


class CycleState(str, Enum):
    """Progress of one cycle: START -> STATUS_RESOLVED -> DECIDED -> ... -> LOGGED."""

    START = "start"
    STATUS_RESOLVED = "status_resolved"
    DECIDED = "decided"
    DISPATCHED = "dispatched"
    VERIFIED = "verified"
    TIMEOUT_PENDING = "timeout_pending"
    SKIPPED = "skipped"
    LOGGED = "logged"


@dataclass(frozen=True)
class PricePoint:
    """One price interval as delivered by the price feed."""

    start: datetime
    end: datetime
    value: Decimal
    currency: Currency = Currency.SEK


@dataclass(frozen=True)
class PriceBaseline:
    """Rolling baseline the current price is compared against.

    ``degraded`` is True when the rolling window held no points and the
    whole available history was used instead.
    """

    average: Decimal | None
    values: tuple[Decimal, ...]
    days_covered: Decimal
    degraded: bool = False

    @property
    def sample_count(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class ClassificationResult:
    """Classification of one price plus the thresholds that produced it."""

    classification: PriceClassification
    price: Decimal | None
    baseline: PriceBaseline
    low_threshold: Decimal | None
    high_threshold: Decimal | None
    reason: str


@dataclass(frozen=True)
class AutomationSettings:
    """Operator-owned controller configuration, read fresh every cycle.

    Temperatures in degrees Celsius, offsets and hysteresis in degrees.
    """

    target_base_temp: Decimal = Decimal("28")
    min_temp: Decimal = Decimal("18")
    max_temp: Decimal = Decimal("32")
    low_offset: Decimal = Decimal("2")
    high_offset: Decimal = Decimal("2")
    hysteresis: Decimal = Decimal("0.5")
    anti_short_cycle_minutes: int = 30
    max_change_per_hour: Decimal = Decimal("2")
    rolling_window_days: int = 7
    classification_method: ClassificationMethod = ClassificationMethod.DELTA
    delta_percent: Decimal = Decimal("15")
    percentile_low: Decimal = Decimal("30")
    percentile_high: Decimal = Decimal("70")
    enabled: bool = True
    shutdown_price_threshold: Decimal | None = None

    def __post_init__(self) -> None:
        if self.min_temp > self.max_temp:
            raise InvalidSettingsError(
                f"min_temp {self.min_temp} exceeds max_temp {self.max_temp}"
            )
        if not self.min_temp <= self.target_base_temp <= self.max_temp:
            raise InvalidSettingsError(
                f"target_base_temp {self.target_base_temp} outside "
                f"[{self.min_temp}, {self.max_temp}]"
            )
        for name in ("low_offset", "high_offset", "hysteresis", "max_change_per_hour", "delta_percent"):
            if getattr(self, name) < 0:
                raise InvalidSettingsError(f"{name} must not be negative")
        if self.anti_short_cycle_minutes < 0:
            raise InvalidSettingsError("anti_short_cycle_minutes must not be negative")
        if self.rolling_window_days <= 0:
            raise InvalidSettingsError("rolling_window_days must be positive")
        if not Decimal("0") <= self.percentile_low < self.percentile_high <= Decimal("100"):
            raise InvalidSettingsError(
                "percentiles must satisfy 0 <= percentile_low < percentile_high <= 100"
            )


@dataclass
class DeviceStatus:
    """Per-cycle snapshot of the heat pump.

    ``observed_at`` is when the device state was observed (Unix seconds),
    not when it was read from a cache.
    """

    device_id: str
    setpoint: Decimal | None
    measured_temp: Decimal | None
    power_state: PowerState
    online: bool
    source_kind: SourceKind
    observed_at: float


@dataclass
class QuotaState:
    """Pull/write API call budget for the current window."""

    calls_used_in_window: int = 0
    window_started_at: float = 0.0
    last_call_at: float | None = None


@dataclass(frozen=True)
class DecisionRecord:
    """Audit record for one control cycle. Immutable once built.

    The decision engine creates it; the dispatcher derives updated copies
    with dataclasses.replace.
    """

    timestamp: float
    price: Decimal | None
    classification: PriceClassification
    previous_setpoint: Decimal | None
    proposed_setpoint: Decimal | None
    applied_setpoint: Decimal | None
    reason: str
    outcome: DecisionOutcome
    command: CommandKind = CommandKind.SET_SETPOINT
    emergency: bool = False
    status_source: SourceKind | None = None
    cycle_state: CycleState = CycleState.DECIDED
    confirmation_pending: bool = False
    id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def changes_setpoint(self) -> bool:
        """Whether this record asks the dispatcher to write a new setpoint."""
        return (
            self.command == CommandKind.SET_SETPOINT
            and self.outcome in (DecisionOutcome.APPLIED, DecisionOutcome.SKIPPED_RATE_LIMIT)
            and self.proposed_setpoint is not None
            and self.proposed_setpoint != self.previous_setpoint
        )


@dataclass
class CommandIntent:
    """A routine command that could not be issued for lack of call budget."""

    device_id: str
    command: CommandKind
    value: Decimal | None
    created_at: float = field(default_factory=time.time)
    status: str = "pending"
    id: str = field(default_factory=lambda: uuid4().hex)


_DECIMAL_SETTINGS = {
    "target_base_temp",
    "min_temp",
    "max_temp",
    "low_offset",
    "high_offset",
    "hysteresis",
    "max_change_per_hour",
    "delta_percent",
    "percentile_low",
    "percentile_high",
    "shutdown_price_threshold",
}


def settings_to_dict(settings: AutomationSettings) -> dict:
    """JSON-safe dict of AutomationSettings (Decimals as strings)."""
    data: dict = {}
    for name in AutomationSettings.__dataclass_fields__:
        value = getattr(settings, name)
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, Enum):
            value = value.value
        data[name] = value
    return data


def settings_from_dict(data: dict, base: AutomationSettings | None = None) -> AutomationSettings:
    """Build AutomationSettings from a (possibly partial) dict over ``base``.

    Raises:
        InvalidSettingsError: On unknown keys, unparsable values or
            inconsistent bounds.
    """
    base = base or AutomationSettings()
    unknown = set(data) - set(AutomationSettings.__dataclass_fields__)
    if unknown:
        raise InvalidSettingsError(f"unknown settings: {', '.join(sorted(unknown))}")

    changes: dict = {}
    try:
        for name, value in data.items():
            if value is None and name != "shutdown_price_threshold":
                raise InvalidSettingsError(f"{name} must not be null")
            if name in _DECIMAL_SETTINGS:
                changes[name] = None if value is None else Decimal(str(value))
            elif name == "classification_method":
                changes[name] = ClassificationMethod(value)
            elif name in ("anti_short_cycle_minutes", "rolling_window_days"):
                changes[name] = int(value)
            elif name == "enabled":
                changes[name] = bool(value)
    except (ArithmeticError, ValueError, TypeError) as e:
        raise InvalidSettingsError(f"invalid settings value: {e}") from e

    return replace(base, **changes)
