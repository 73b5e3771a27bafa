"""Tests for telemetry parsing, the real-time cache and the simulated push feed."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from poolheat.device.realtime import RealtimeStatusCache, SimulatedPushFeed, parse_telemetry
from poolheat.models import PowerState, SourceKind

NOW = 1_700_000_000.0


class TestParseTelemetry:
    def test_maps_known_codes(self) -> None:
        status = parse_telemetry(
            "hp-1",
            [
                {"code": "SetTemp", "value": 29},
                {"code": "WInTemp", "value": "27.5"},
                {"code": "Power", "value": True},
                {"code": "mode", "value": "heat"},
            ],
            observed_at=NOW,
        )

        assert status.setpoint == Decimal("29")
        assert status.measured_temp == Decimal("27.5")
        assert status.power_state == PowerState.ON
        assert status.source_kind == SourceKind.REALTIME
        assert status.online is True
        assert status.observed_at == NOW

    def test_legacy_aliases(self) -> None:
        status = parse_telemetry(
            "hp-1",
            [{"code": "temp_set", "value": 30}, {"code": "WaterTemp", "value": 25}, {"code": "switch", "value": False}],
        )

        assert status.setpoint == Decimal("30")
        assert status.measured_temp == Decimal("25")
        assert status.power_state == PowerState.OFF

    def test_water_inlet_preferred_over_alias(self) -> None:
        status = parse_telemetry(
            "hp-1",
            [{"code": "WInTemp", "value": 26}, {"code": "CurrentTemp", "value": 20}],
        )

        assert status.measured_temp == Decimal("26")

    def test_missing_fields_stay_unknown(self) -> None:
        status = parse_telemetry("hp-1", [{"code": "SetTemp", "value": "not-a-number"}])

        assert status.setpoint is None
        assert status.measured_temp is None
        assert status.power_state == PowerState.UNKNOWN


class TestRealtimeStatusCache:
    @pytest.mark.asyncio()
    async def test_deposit_and_get(self) -> None:
        cache = RealtimeStatusCache()
        await cache.deposit(parse_telemetry("hp-1", [{"code": "SetTemp", "value": 28}], NOW))

        entry = await cache.get("hp-1", NOW + 10)

        assert entry is not None and entry.setpoint == Decimal("28")
        assert await cache.get_age("hp-1", NOW + 10) == 10

    @pytest.mark.asyncio()
    async def test_expired_entries_dropped(self) -> None:
        cache = RealtimeStatusCache(ttl_seconds=60)
        await cache.deposit(parse_telemetry("hp-1", [], NOW))

        assert await cache.get("hp-1", NOW + 61) is None

    @pytest.mark.asyncio()
    async def test_older_observation_ignored(self) -> None:
        cache = RealtimeStatusCache()
        await cache.deposit(parse_telemetry("hp-1", [{"code": "SetTemp", "value": 30}], NOW))
        await cache.deposit(parse_telemetry("hp-1", [{"code": "SetTemp", "value": 25}], NOW - 5))

        entry = await cache.get("hp-1", NOW)

        assert entry is not None and entry.setpoint == Decimal("30")

    @pytest.mark.asyncio()
    async def test_partial_push_merged(self) -> None:
        cache = RealtimeStatusCache()
        await cache.deposit(parse_telemetry("hp-1", [{"code": "SetTemp", "value": 30}, {"code": "Power", "value": True}], NOW))
        await cache.deposit(parse_telemetry("hp-1", [{"code": "WInTemp", "value": 27}], NOW + 1))

        entry = await cache.get("hp-1", NOW + 1)

        assert entry is not None
        assert entry.setpoint == Decimal("30")
        assert entry.measured_temp == Decimal("27")
        assert entry.power_state == PowerState.ON

    @pytest.mark.asyncio()
    async def test_get_fresh(self) -> None:
        cache = RealtimeStatusCache()
        await cache.deposit(parse_telemetry("hp-1", [], NOW))

        assert await cache.get_fresh("hp-1", 300, NOW + 100) is not None
        assert await cache.get_fresh("hp-1", 300, NOW + 301) is None


class TestSimulatedPushFeed:
    @pytest.mark.asyncio()
    async def test_publish_once_deposits_and_sinks(self, pump) -> None:
        cache = RealtimeStatusCache()
        sink = AsyncMock()
        feed = SimulatedPushFeed(pump.snapshot, cache, interval=60, sink=sink)

        status = await feed.publish_once()

        assert await cache.get(pump.device_id) is status
        sink.assert_awaited_once_with(status)
        assert pump.read_count == 0

    @pytest.mark.asyncio()
    async def test_start_stop(self, pump) -> None:
        cache = RealtimeStatusCache()
        feed = SimulatedPushFeed(pump.snapshot, cache, interval=60)

        await feed.start()
        await asyncio.sleep(0)
        await feed.stop()

        assert await cache.get(pump.device_id) is not None
