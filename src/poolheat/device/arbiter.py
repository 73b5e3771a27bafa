"""Device state arbitration across ranked, imperfect status sources.

Each cycle needs one DeviceStatus. Sources are tried in order of trust:

1. RealtimeStatusProvider -- pushed cache, only if fresher than the staleness threshold
2. PolledStatusProvider   -- pull API, only if the call budget allows it
3. PersistedStatusProvider -- last-persisted status, re-labelled CACHED even if stale

Providers are a ranked list of strategies so sources can be added, removed
or tested in isolation. A provider failure (exception or timeout) is logged
and falls through to the next provider; reads are never retried.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from poolheat.exceptions import DeviceUnavailableError
from poolheat.logging import get_logger
from poolheat.models import DeviceStatus, SourceKind

if TYPE_CHECKING:
    from poolheat.data.base import StatusStore
    from poolheat.device.adapter import DeviceAdapter
    from poolheat.device.quota import QuotaTracker
    from poolheat.device.realtime import RealtimeStatusCache

logger = get_logger(__name__)


@dataclass
class StatusReading:
    """A status plus how much the providing source is trusted (0-1)."""

    status: DeviceStatus
    confidence: float


@dataclass
class ArbitrationResult:
    """Outcome of one arbitration: chosen status and why earlier sources were passed over."""

    status: DeviceStatus
    confidence: float
    provider: str
    fallbacks: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.fallbacks)

    def describe(self) -> str:
        """Human-readable source summary for decision reasons."""
        text = f"status from {self.provider}"
        if self.fallbacks:
            text += f" ({'; '.join(self.fallbacks)})"
        return text


class StatusProvider(ABC):
    """One ranked source of device status."""

    name: str = "provider"

    def __init__(self) -> None:
        self.miss_reason: str = ""

    @abstractmethod
    async def fetch(self, now: float) -> StatusReading | None:
        """Return a reading, or None (with miss_reason set) if this source cannot serve."""
        ...


class RealtimeStatusProvider(StatusProvider):
    """Reads the push cache; accepts entries observed within ``staleness_seconds``."""

    name = "realtime"

    def __init__(
        self,
        cache: RealtimeStatusCache,
        device_id: str,
        staleness_seconds: float = 300.0,
    ) -> None:
        super().__init__()
        self._cache = cache
        self._device_id = device_id
        self._staleness = staleness_seconds

    async def fetch(self, now: float) -> StatusReading | None:
        entry = await self._cache.get(self._device_id, now)
        if entry is None:
            self.miss_reason = "no real-time data"
            return None
        age = now - entry.observed_at
        if age > self._staleness:
            self.miss_reason = f"real-time data stale ({age:.0f}s old)"
            return None
        return StatusReading(status=replace(entry, source_kind=SourceKind.REALTIME), confidence=1.0)


class PolledStatusProvider(StatusProvider):
    """Pulls status from the device adapter when the call budget allows.

    The quota reservation (counter increment + last_call_at) happens
    atomically before the call, so a concurrent path cannot double-spend.
    """

    name = "pull API"

    def __init__(
        self,
        adapter: DeviceAdapter,
        quota: QuotaTracker,
        timeout_seconds: float = 10.0,
    ) -> None:
        super().__init__()
        self._adapter = adapter
        self._quota = quota
        self._timeout = timeout_seconds

    async def fetch(self, now: float) -> StatusReading | None:
        if not await self._quota.try_acquire(now):
            self.miss_reason = "pull quota unavailable"
            return None
        status = await asyncio.wait_for(self._adapter.read_status(), timeout=self._timeout)
        return StatusReading(status=replace(status, source_kind=SourceKind.POLLED), confidence=0.8)


class PersistedStatusProvider(StatusProvider):
    """Last-persisted status, used for read continuity even when stale.

    A cached status only informs the hysteresis comparison; it never
    justifies skipping a write.
    """

    name = "cache"

    def __init__(self, store: StatusStore, device_id: str) -> None:
        super().__init__()
        self._store = store
        self._device_id = device_id

    async def fetch(self, now: float) -> StatusReading | None:
        status = await self._store.latest_status(self._device_id)
        if status is None:
            self.miss_reason = "no persisted status"
            return None
        return StatusReading(status=replace(status, source_kind=SourceKind.CACHED), confidence=0.3)


class DeviceStateArbiter:
    """Selects the most trustworthy device status for this cycle.

    Args:
        providers: Status providers in order of preference.
        provider_timeout: Upper bound on any single provider call, on top of
            provider-specific timeouts, so a hung source cannot hang the cycle.
    """

    def __init__(self, providers: list[StatusProvider], provider_timeout: float = 15.0) -> None:
        self._providers = providers
        self._provider_timeout = provider_timeout

    @property
    def providers(self) -> list[StatusProvider]:
        return list(self._providers)

    async def resolve(self, now: float | None = None) -> ArbitrationResult:
        """Walk the providers in order and return the first usable status.

        Raises:
            DeviceUnavailableError: If every provider failed.
        """
        now = now if now is not None else time.time()
        fallbacks: list[str] = []

        for provider in self._providers:
            provider.miss_reason = ""
            try:
                reading = await asyncio.wait_for(
                    provider.fetch(now), timeout=self._provider_timeout
                )
            except asyncio.TimeoutError:
                reading = None
                provider.miss_reason = f"{provider.name} timed out"
            except Exception as e:
                reading = None
                provider.miss_reason = f"{provider.name} failed: {e}"
                logger.warning("status_provider_failed", provider=provider.name, error=str(e))

            if reading is not None:
                logger.info(
                    "device_status_resolved",
                    provider=provider.name,
                    confidence=reading.confidence,
                    setpoint=str(reading.status.setpoint),
                    online=reading.status.online,
                    observed_at=reading.status.observed_at,
                    fallbacks=fallbacks,
                )
                return ArbitrationResult(
                    status=reading.status,
                    confidence=reading.confidence,
                    provider=provider.name,
                    fallbacks=fallbacks,
                )

            fallbacks.append(provider.miss_reason or f"{provider.name} unavailable")
            logger.debug("status_provider_skipped", provider=provider.name, reason=fallbacks[-1])

        logger.error("no_device_status_available", reasons=fallbacks)
        raise DeviceUnavailableError("no device status available: " + "; ".join(fallbacks))
