"""Simulated heat pump for paper mode and tests.

Implements the same DeviceAdapter ABC a live adapter does, so the control
loop is identical regardless of mode. Writes are acknowledged immediately
and take effect after a configurable delay, like a real device that picks up
cloud commands on its next sync.
"""

import time
from decimal import Decimal

from poolheat.device.adapter import DeviceAdapter
from poolheat.exceptions import DeviceCommandError, DeviceError
from poolheat.logging import get_logger
from poolheat.models import DeviceStatus, PowerState, SourceKind

logger = get_logger(__name__)

#: Measured water temperature moves this much toward the setpoint per observation.
_DRIFT_PER_OBSERVATION = Decimal("0.1")


class SimulatedHeatPump(DeviceAdapter):
    """In-memory heat pump.

    Args:
        device_id: Identifier reported in every status.
        setpoint: Initial target temperature.
        measured_temp: Initial water temperature.
        apply_delay: Seconds between an acknowledged write and the device
            reporting the new value.
    """

    def __init__(
        self,
        device_id: str = "heatpump-1",
        setpoint: Decimal = Decimal("28"),
        measured_temp: Decimal = Decimal("26"),
        apply_delay: float = 0.0,
    ) -> None:
        self.device_id = device_id
        self._setpoint = setpoint
        self._measured_temp = measured_temp
        self._power_state = PowerState.ON
        self._apply_delay = apply_delay
        self._pending: tuple[Decimal, float] | None = None
        self.online = True
        self.drop_writes = False  # acknowledge writes but never apply them
        self.fail_writes = False  # reject writes with DeviceCommandError
        self.fail_reads = False
        self.read_count = 0
        self.write_count = 0
        self.power_commands: list[bool] = []
        self.written_setpoints: list[Decimal] = []

    def _apply_pending(self, now: float) -> None:
        if self._pending is not None and now >= self._pending[1]:
            self._setpoint = self._pending[0]
            self._pending = None

    def _drift(self) -> None:
        if self._power_state != PowerState.ON:
            return
        gap = self._setpoint - self._measured_temp
        if abs(gap) <= _DRIFT_PER_OBSERVATION:
            self._measured_temp = self._setpoint
        elif gap > 0:
            self._measured_temp += _DRIFT_PER_OBSERVATION
        else:
            self._measured_temp -= _DRIFT_PER_OBSERVATION

    def snapshot(self, source_kind: SourceKind = SourceKind.REALTIME) -> DeviceStatus:
        """Current state without counting as a cloud call (used by the push feed)."""
        now = time.time()
        self._apply_pending(now)
        self._drift()
        return DeviceStatus(
            device_id=self.device_id,
            setpoint=self._setpoint,
            measured_temp=self._measured_temp,
            power_state=self._power_state,
            online=self.online,
            source_kind=source_kind,
            observed_at=now,
        )

    async def read_status(self) -> DeviceStatus:
        self.read_count += 1
        if self.fail_reads:
            raise DeviceError(f"Simulated read failure for {self.device_id}")
        return self.snapshot(SourceKind.POLLED)

    async def write_setpoint(self, value: Decimal) -> None:
        self.write_count += 1
        if self.fail_writes:
            raise DeviceCommandError(f"Simulated write rejection for {self.device_id}")
        if not self.online:
            raise DeviceCommandError(f"Device {self.device_id} is offline")
        self.written_setpoints.append(value)
        if not self.drop_writes:
            self._pending = (value, time.time() + self._apply_delay)
            self._apply_pending(time.time())
        logger.info(
            "simulated_setpoint_written",
            device_id=self.device_id,
            value=str(value),
            apply_delay=self._apply_delay,
            dropped=self.drop_writes,
        )

    async def set_power(self, on: bool) -> None:
        self.write_count += 1
        if self.fail_writes:
            raise DeviceCommandError(f"Simulated power command rejection for {self.device_id}")
        self.power_commands.append(on)
        self._power_state = PowerState.ON if on else PowerState.OFF
        logger.info("simulated_power_set", device_id=self.device_id, on=on)

    @property
    def setpoint(self) -> Decimal:
        """Setpoint currently in effect on the simulated device."""
        self._apply_pending(time.time())
        return self._setpoint

    @property
    def power_state(self) -> PowerState:
        return self._power_state
