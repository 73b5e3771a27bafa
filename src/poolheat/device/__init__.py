"""Device layer: call quota, real-time cache, status arbitration and command dispatch."""

from poolheat.device.adapter import DeviceAdapter
from poolheat.device.arbiter import (
    ArbitrationResult,
    DeviceStateArbiter,
    PersistedStatusProvider,
    PolledStatusProvider,
    RealtimeStatusProvider,
    StatusProvider,
    StatusReading,
)
from poolheat.device.dispatcher import CommandDispatcher
from poolheat.device.quota import QuotaTracker
from poolheat.device.realtime import RealtimeStatusCache, SimulatedPushFeed, parse_telemetry
from poolheat.device.simulated import SimulatedHeatPump

__all__ = [
    "ArbitrationResult",
    "CommandDispatcher",
    "DeviceAdapter",
    "DeviceStateArbiter",
    "PersistedStatusProvider",
    "PolledStatusProvider",
    "QuotaTracker",
    "RealtimeStatusCache",
    "RealtimeStatusProvider",
    "SimulatedHeatPump",
    "SimulatedPushFeed",
    "StatusProvider",
    "StatusReading",
    "parse_telemetry",
]
