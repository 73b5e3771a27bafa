"""Tests for RunGuard: in-process lock and database lease."""

import time
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from poolheat.data.database import ControllerDatabase
from poolheat.data.store import ControllerStore
from poolheat.exceptions import CycleInProgressError
from poolheat.guard import RunGuard


@pytest_asyncio.fixture
async def store(tmp_path):
    async with ControllerDatabase(str(tmp_path / "guard.db")) as database:
        yield ControllerStore(database)


class TestInProcess:
    @pytest.mark.asyncio()
    async def test_second_hold_refused(self) -> None:
        guard = RunGuard()

        async with guard.hold():
            assert guard.locked is True
            with pytest.raises(CycleInProgressError):
                async with guard.hold():
                    pass

        assert guard.locked is False

    @pytest.mark.asyncio()
    async def test_released_after_error(self) -> None:
        guard = RunGuard()

        with pytest.raises(RuntimeError):
            async with guard.hold():
                raise RuntimeError("boom")

        async with guard.hold():
            assert guard.locked is True


class TestLease:
    @pytest.mark.asyncio()
    async def test_lease_held_by_other_process(self, store: ControllerStore) -> None:
        now = time.time()
        await store.acquire_lease("control_cycle", "other-host:1", 300, now)
        guard = RunGuard(store)

        with pytest.raises(CycleInProgressError):
            async with guard.hold(now):
                pass

        assert guard.locked is False

    @pytest.mark.asyncio()
    async def test_expired_lease_taken_over(self, store: ControllerStore) -> None:
        now = time.time()
        await store.acquire_lease("control_cycle", "other-host:1", 300, now - 600)

        async with RunGuard(store).hold(now):
            assert await store.acquire_lease("control_cycle", "third:1", 300, now) is False

    @pytest.mark.asyncio()
    async def test_lease_released_on_exit(self, store: ControllerStore) -> None:
        now = time.time()

        async with RunGuard(store).hold(now):
            pass

        assert await store.acquire_lease("control_cycle", "other-host:1", 300, now) is True

    @pytest.mark.asyncio()
    async def test_release_failure_not_raised(self) -> None:
        store = AsyncMock()
        store.acquire_lease.return_value = True
        store.release_lease.side_effect = OSError("database is locked")
        guard = RunGuard(store)

        async with guard.hold():
            pass

        store.release_lease.assert_awaited_once()
        assert guard.locked is False
