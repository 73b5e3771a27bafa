"""Run guard: at most one control cycle at a time.

Inside one process an asyncio.Lock serializes the scheduler, the manual
trigger and signal handlers. With a ControllerStore attached, a lease row in
the database also keeps separately started processes (cron invocations, a
second instance) from overlapping. Expired leases are taken over.
"""

from __future__ import annotations

import asyncio
import os
import socket
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING
from uuid import uuid4

from poolheat.exceptions import CycleInProgressError
from poolheat.logging import get_logger

if TYPE_CHECKING:
    from poolheat.data.store import ControllerStore

logger = get_logger(__name__)


class RunGuard:
    """Non-blocking mutual exclusion for control cycles.

    Args:
        store: Optional store providing the database lease.
        ttl_seconds: Lease lifetime; should exceed the cycle budget.
        name: Lease name.
    """

    def __init__(
        self,
        store: ControllerStore | None = None,
        ttl_seconds: float = 300.0,
        name: str = "control_cycle",
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._name = name
        self._holder = f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"
        self._lock = asyncio.Lock()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def hold(self, now: float | None = None) -> AsyncIterator[None]:
        """Hold the guard for the duration of the block.

        Raises:
            CycleInProgressError: If a cycle is already running here or in
                another process.
        """
        if self._lock.locked():
            raise CycleInProgressError("a control cycle is already running")

        async with self._lock:
            if self._store is not None:
                acquired = await self._store.acquire_lease(
                    self._name, self._holder, self._ttl, now if now is not None else time.time()
                )
                if not acquired:
                    logger.warning("run_lease_held_elsewhere", lease=self._name)
                    raise CycleInProgressError("another process holds the control cycle lease")
            try:
                yield
            finally:
                if self._store is not None:
                    try:
                        await self._store.release_lease(self._name, self._holder)
                    except Exception as e:
                        # the lease expires on its own after ttl_seconds
                        logger.warning("run_lease_release_failed", error=str(e))
