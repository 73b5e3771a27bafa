"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from poolheat.models import AutomationSettings, ClassificationMethod, Currency


class DeviceSettings(BaseSettings):
    """Heat pump adapter settings."""

    model_config = SettingsConfigDict(env_prefix="HEATPUMP_")

    device_id: str = "heatpump-1"
    mode: Literal["simulated"] = "simulated"  # live adapters are plugged in by deployment
    read_timeout_seconds: float = 10.0
    write_timeout_seconds: float = 10.0
    simulated_initial_setpoint: Decimal = Decimal("28")
    simulated_initial_temp: Decimal = Decimal("26")
    simulated_apply_delay_seconds: float = 2.0
    push_interval_seconds: float = 30.0  # simulated real-time feed cadence


class QuotaSettings(BaseSettings):
    """Device cloud call budget (pull reads and writes share it)."""

    model_config = SettingsConfigDict(env_prefix="QUOTA_")

    max_calls_per_window: int = 5
    window_seconds: float = 3600.0
    min_interval_seconds: float = 60.0  # at most one pull call per minute


class ControlSettings(BaseSettings):
    """Control loop timing, verification and retry parameters."""

    model_config = SettingsConfigDict(env_prefix="CONTROL_")

    cycle_interval_seconds: int = 300
    cycle_budget_seconds: float = 240.0  # must stay below cycle_interval_seconds
    realtime_staleness_seconds: float = 300.0
    verification_window_seconds: float = 30.0
    verification_poll_seconds: float = 5.0
    setpoint_epsilon: Decimal = Decimal("0.25")
    write_max_attempts: int = 2  # initial write + one retry
    backoff_base_seconds: float = 2.0
    price_fetch_timeout_seconds: float = 10.0
    lease_ttl_seconds: float = 300.0


class PriceSettings(BaseSettings):
    """Price feed normalization settings.

    exchange_rates maps a foreign currency code to the number of
    ``currency`` units per foreign unit (e.g. {"EUR": "11.5"} for SEK).
    """

    model_config = SettingsConfigDict(env_prefix="PRICE_")

    bidding_zone: str = "SE3"
    currency: Currency = Currency.SEK
    exchange_rates: dict[str, Decimal] = {}
    net_fee_per_kwh: Decimal = Decimal("0")
    estimated_tax_rate: Decimal = Decimal("0")  # 0.25 adds 25% on the energy price


class AutomationDefaults(BaseSettings):
    """Seed values for AutomationSettings when the settings store is empty."""

    model_config = SettingsConfigDict(env_prefix="AUTOMATION_")

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

    def to_automation_settings(self) -> AutomationSettings:
        """Build the immutable per-cycle settings object (validates bounds)."""
        return AutomationSettings(**self.model_dump())


class DatabaseSettings(BaseSettings):
    """SQLite storage for the decision log, status and settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    enabled: bool = True
    path: str = "data/controller.db"


class DashboardSettings(BaseSettings):
    """Control API server configuration."""

    model_config = SettingsConfigDict(env_prefix="DASHBOARD_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    device: DeviceSettings = DeviceSettings()
    quota: QuotaSettings = QuotaSettings()
    control: ControlSettings = ControlSettings()
    price: PriceSettings = PriceSettings()
    automation: AutomationDefaults = AutomationDefaults()
    database: DatabaseSettings = DatabaseSettings()
    dashboard: DashboardSettings = DashboardSettings()
