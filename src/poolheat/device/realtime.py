"""Real-time push channel: short-lived status cache, telemetry parsing, simulated feed.

The arbiter only ever reads RealtimeStatusCache; it never blocks on the push
transport. Whatever consumes the device's push messages (webhook route,
message-queue subscriber, or the SimulatedPushFeed below) deposits parsed
DeviceStatus objects here. The transport is swappable infrastructure.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import Any

from poolheat.logging import get_logger
from poolheat.models import DeviceStatus, PowerState, SourceKind

logger = get_logger(__name__)

#: Device data-point codes -> DeviceStatus field. Includes legacy aliases
#: reported by older firmware.
_SETPOINT_CODES = {"SetTemp", "temp_set"}
_MEASURED_CODES = {"WInTemp", "WaterTemp", "CurrentTemp"}
_POWER_CODES = {"Power", "switch_led", "switch"}


def _to_decimal(value: Any) -> Decimal | None:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_telemetry(
    device_id: str,
    items: list[dict],
    observed_at: float | None = None,
) -> DeviceStatus:
    """Convert a list of {"code": ..., "value": ...} data points into a DeviceStatus.

    Unknown codes are ignored. Missing fields stay None / UNKNOWN.

    Args:
        device_id: Device the data points belong to.
        items: Data points as pushed by the device cloud.
        observed_at: Observation time; defaults to now.

    Returns:
        DeviceStatus with source_kind=REALTIME and online=True (a device
        that pushes is online).
    """
    setpoint: Decimal | None = None
    measured: Decimal | None = None
    power = PowerState.UNKNOWN

    for item in items:
        code = item.get("code")
        value = item.get("value")
        if code in _SETPOINT_CODES:
            setpoint = _to_decimal(value)
        elif code in _MEASURED_CODES:
            # WInTemp is the real water temperature; aliases only fill gaps
            if measured is None or code == "WInTemp":
                measured = _to_decimal(value)
        elif code in _POWER_CODES:
            power = PowerState.ON if value in (True, "true", "on", 1) else PowerState.OFF

    return DeviceStatus(
        device_id=device_id,
        setpoint=setpoint,
        measured_temp=measured,
        power_state=power,
        online=True,
        source_kind=SourceKind.REALTIME,
        observed_at=observed_at if observed_at is not None else time.time(),
    )


class RealtimeStatusCache:
    """Short-lived in-memory cache of pushed device statuses keyed by device id.

    Uses asyncio.Lock for safe concurrent deposits/reads from the push
    consumer and the control cycle. Entries older than ttl_seconds are
    dropped on read.
    """

    def __init__(self, ttl_seconds: float = 3600.0) -> None:
        self._entries: dict[str, DeviceStatus] = {}
        self._ttl = ttl_seconds
        self._lock = asyncio.Lock()

    async def deposit(self, status: DeviceStatus) -> None:
        """Store a pushed status unless a newer observation is already cached.

        Partial pushes (setpoint or measured temperature missing) are merged
        with the previous entry so a power-only message does not erase the
        last known setpoint.
        """
        async with self._lock:
            previous = self._entries.get(status.device_id)
            if previous is not None and previous.observed_at > status.observed_at:
                logger.debug(
                    "realtime_status_out_of_order",
                    device_id=status.device_id,
                    observed_at=status.observed_at,
                )
                return
            if previous is not None:
                if status.setpoint is None:
                    status.setpoint = previous.setpoint
                if status.measured_temp is None:
                    status.measured_temp = previous.measured_temp
                if status.power_state == PowerState.UNKNOWN:
                    status.power_state = previous.power_state
            self._entries[status.device_id] = status

    async def get(self, device_id: str, now: float | None = None) -> DeviceStatus | None:
        """Return the cached status, or None if absent or expired."""
        now = now if now is not None else time.time()
        async with self._lock:
            entry = self._entries.get(device_id)
            if entry is None:
                return None
            if now - entry.observed_at > self._ttl:
                del self._entries[device_id]
                return None
            return entry

    async def get_age(self, device_id: str, now: float | None = None) -> float | None:
        """Seconds since the cached status was observed, or None if not cached."""
        entry = await self.get(device_id, now)
        if entry is None:
            return None
        return (now if now is not None else time.time()) - entry.observed_at

    async def get_fresh(
        self, device_id: str, max_age_seconds: float, now: float | None = None
    ) -> DeviceStatus | None:
        """Return the cached status only if observed within max_age_seconds."""
        now = now if now is not None else time.time()
        entry = await self.get(device_id, now)
        if entry is None or now - entry.observed_at > max_age_seconds:
            return None
        return entry


class SimulatedPushFeed:
    """Background task that synthesizes push messages from a simulated pump.

    Stands in for the device cloud's message queue in simulated mode.

    Args:
        source: Callable returning the current DeviceStatus (no quota use).
        cache: Cache the statuses are deposited into.
        interval: Seconds between synthetic messages.
        sink: Optional async callable also receiving each status (e.g. the
            status store's save_status, for last-known continuity).
    """

    def __init__(
        self,
        source: Callable[[], DeviceStatus],
        cache: RealtimeStatusCache,
        interval: float = 30.0,
        sink: Callable[[DeviceStatus], Awaitable[None]] | None = None,
    ) -> None:
        self._source = source
        self._cache = cache
        self._interval = interval
        self._sink = sink
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    async def start(self) -> None:
        """Begin publishing in the background."""
        if self._running:
            logger.warning("push_feed_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._publish_loop())
        logger.info("push_feed_started", interval=self._interval)

    async def stop(self) -> None:
        """Stop publishing."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("push_feed_stopped")

    async def publish_once(self) -> DeviceStatus:
        """Deposit one synthetic message and return it."""
        status = self._source()
        await self._cache.deposit(status)
        if self._sink is not None:
            await self._sink(status)
        return status

    async def _publish_loop(self) -> None:
        while self._running:
            try:
                await self.publish_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("push_feed_publish_error", exc_info=True)
            if self._running:
                await asyncio.sleep(self._interval)
