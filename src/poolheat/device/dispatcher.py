"""Command dispatcher: turns a DecisionRecord into a verified device write.

Writes go through the shared QuotaTracker and are limited by its window
count only; the minimum interval spaces out the arbiter's status pulls.
Critical commands (emergency decisions, price shutdown) are always sent and
only force-increment the counter; routine commands without budget are
recorded as CommandIntents and come back as DEFERRED_QUOTA so the next cycle
can re-decide.

After a write the dispatcher waits for confirmation, preferring real-time
observations made after the write and falling back to one pull read at the
end of the verification window. An explicit rejection or an observed
mismatch is retried with exponential backoff. A write that times out, or
that nothing confirms in time, is never re-sent in the same cycle: the
record keeps its outcome and is marked confirmation_pending.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import replace
from decimal import Decimal
from typing import TYPE_CHECKING

from poolheat.control.decision import check_bounds
from poolheat.exceptions import DeviceCommandError, DeviceError, QuotaExhaustedError
from poolheat.logging import get_logger
from poolheat.models import (
    AutomationSettings,
    CommandIntent,
    CommandKind,
    CycleState,
    DecisionOutcome,
    DecisionRecord,
)

if TYPE_CHECKING:
    from poolheat.config import ControlSettings
    from poolheat.data.base import IntentStore
    from poolheat.device.adapter import DeviceAdapter
    from poolheat.device.quota import QuotaTracker
    from poolheat.device.realtime import RealtimeStatusCache

logger = get_logger(__name__)


class CommandDispatcher:
    """Sends setpoint and power commands to one device.

    Args:
        adapter: Device adapter commands are sent through.
        quota: Call budget shared with the arbiter's pull reads.
        cache: Real-time status cache used for confirmation.
        intents: Store for quota-starved routine commands.
        settings: Verification window, epsilon, attempts and backoff.
        read_timeout: Timeout for confirmation pull reads.
        write_timeout: Timeout for a single write call.
    """

    def __init__(
        self,
        adapter: DeviceAdapter,
        quota: QuotaTracker,
        cache: RealtimeStatusCache,
        intents: IntentStore,
        settings: ControlSettings,
        read_timeout: float = 10.0,
        write_timeout: float = 10.0,
    ) -> None:
        self._adapter = adapter
        self._quota = quota
        self._cache = cache
        self._intents = intents
        self._settings = settings
        self._read_timeout = read_timeout
        self._write_timeout = write_timeout
        #: (record id, target) of the most recent setpoint write sent to the adapter
        self.last_write: tuple[str, Decimal] | None = None

    @property
    def device_id(self) -> str:
        return self._adapter.device_id

    @staticmethod
    def _remaining(deadline: float | None) -> float:
        if deadline is None:
            return math.inf
        return deadline - time.monotonic()

    def _matches(self, observed: Decimal, target: Decimal) -> bool:
        return abs(observed - target) <= self._settings.setpoint_epsilon

    async def _acquire(self, critical: bool, now: float) -> bool:
        if critical:
            await self._quota.force_acquire(now)
            return True
        return await self._quota.try_acquire(now, enforce_interval=False)

    async def _defer(self, command: CommandKind, value: Decimal | None) -> CommandIntent:
        intent = CommandIntent(device_id=self.device_id, command=command, value=value)
        await self._intents.record_intent(intent)
        logger.info(
            "command_deferred_quota",
            device_id=self.device_id,
            command=command.value,
            value=str(value) if value is not None else None,
            intent_id=intent.id,
        )
        return intent

    async def dispatch(
        self,
        record: DecisionRecord,
        settings: AutomationSettings,
        deadline: float | None = None,
    ) -> DecisionRecord:
        """Send the record's proposed setpoint and verify it.

        Args:
            record: Decision for this cycle.
            settings: Settings the decision was made with (bounds re-checked).
            deadline: time.monotonic() value the whole dispatch must finish by.

        Returns:
            Updated copy of the record. Non-dispatchable records come back
            with cycle_state SKIPPED and are otherwise unchanged.

        Raises:
            SetpointBoundsViolation: If the proposed setpoint is out of bounds.
        """
        if not record.changes_setpoint:
            return replace(record, cycle_state=CycleState.SKIPPED)

        check_bounds(record, settings)
        target = record.proposed_setpoint
        assert target is not None
        critical = record.emergency
        started = time.monotonic()
        last_error = ""
        max_attempts = max(1, self._settings.write_max_attempts)

        for attempt in range(max_attempts):
            if attempt > 0:
                delay = self._settings.backoff_base_seconds * 2 ** (attempt - 1)
                if delay >= self._remaining(deadline):
                    last_error += "; no time left in cycle budget for a retry"
                    break
                logger.info("setpoint_write_retry", attempt=attempt + 1, delay=delay, error=last_error)
                await asyncio.sleep(delay)

            if not await self._acquire(critical, record.timestamp + time.monotonic() - started):
                await self._defer(CommandKind.SET_SETPOINT, target)
                note = "call budget exhausted, intent recorded"
                if last_error:
                    note = f"{last_error}; {note}"
                return replace(
                    record,
                    outcome=DecisionOutcome.DEFERRED_QUOTA,
                    applied_setpoint=None,
                    reason=f"{record.reason}; {note}",
                    cycle_state=CycleState.SKIPPED,
                )

            written_at = time.time()
            self.last_write = (record.id, target)
            try:
                await asyncio.wait_for(
                    self._adapter.write_setpoint(target),
                    timeout=min(self._write_timeout, max(self._remaining(deadline), 0.001)),
                )
            except asyncio.TimeoutError:
                logger.warning("setpoint_write_timeout", target=str(target), attempt=attempt + 1)
                return self._pending(record, target, "write timed out")
            except DeviceCommandError as e:
                last_error = f"write rejected: {e}"
                logger.warning("setpoint_write_failed", target=str(target), attempt=attempt + 1, error=str(e))
                continue

            logger.info(
                "setpoint_dispatched",
                target=str(target),
                previous=str(record.previous_setpoint),
                critical=critical,
                attempt=attempt + 1,
            )
            observed = await self._verify(
                target, written_at, critical, deadline, record.timestamp + time.monotonic() - started
            )
            if observed is None:
                return self._pending(record, target, "no confirmation within verification window")
            if self._matches(observed, target):
                completed = await self._intents.complete_intents(self.device_id)
                logger.info(
                    "setpoint_verified",
                    target=str(target),
                    observed=str(observed),
                    intents_completed=completed,
                )
                return replace(
                    record,
                    applied_setpoint=observed,
                    cycle_state=CycleState.VERIFIED,
                    confirmation_pending=False,
                )
            last_error = f"device reports {observed} after writing {target}"
            logger.warning("setpoint_mismatch", target=str(target), observed=str(observed))

        logger.error("setpoint_write_exhausted", target=str(target), error=last_error)
        return replace(
            record,
            outcome=DecisionOutcome.FAILED,
            applied_setpoint=None,
            reason=f"{record.reason}; write of {target} failed after {max_attempts} attempt(s): {last_error}",
            cycle_state=CycleState.DISPATCHED,
        )

    def _pending(self, record: DecisionRecord, target: Decimal, why: str) -> DecisionRecord:
        logger.warning("setpoint_confirmation_pending", target=str(target), why=why)
        return replace(
            record,
            applied_setpoint=target,
            reason=f"{record.reason}; {why}, confirmation pending",
            cycle_state=CycleState.TIMEOUT_PENDING,
            confirmation_pending=True,
        )

    async def _verify(
        self,
        target: Decimal,
        written_at: float,
        critical: bool,
        deadline: float | None,
        now: float,
    ) -> Decimal | None:
        """Wait for the device to report the new setpoint.

        Returns:
            The last observed setpoint (matching or not), or None if nothing
            was observed after the write.
        """
        poll = max(self._settings.verification_poll_seconds, 0.01)
        polls = max(1, math.ceil(self._settings.verification_window_seconds / poll))
        observed: Decimal | None = None
        waited_from = time.monotonic()

        for _ in range(polls):
            wait = min(poll, self._remaining(deadline))
            if wait <= 0:
                break
            await asyncio.sleep(wait)
            entry = await self._cache.get(self.device_id)
            if entry is not None and entry.observed_at >= written_at and entry.setpoint is not None:
                observed = entry.setpoint
                if self._matches(observed, target):
                    return observed

        pulled = await self._pull_setpoint(critical, deadline, now + time.monotonic() - waited_from)
        return pulled if pulled is not None else observed

    async def _pull_setpoint(
        self, critical: bool, deadline: float | None, now: float
    ) -> Decimal | None:
        remaining = self._remaining(deadline)
        if remaining <= 0:
            return None
        if not await self._acquire(critical, now):
            logger.info("verification_pull_skipped", reason="quota")
            return None
        try:
            status = await asyncio.wait_for(
                self._adapter.read_status(), timeout=min(self._read_timeout, remaining)
            )
        except (asyncio.TimeoutError, DeviceError) as e:
            logger.warning("verification_pull_failed", error=str(e) or type(e).__name__)
            return None
        return status.setpoint

    async def set_power(
        self,
        on: bool,
        *,
        critical: bool,
        now: float | None = None,
        deadline: float | None = None,
    ) -> None:
        """Switch the device on or off.

        Critical commands are sent regardless of budget. Routine commands
        without budget are recorded as intents.

        Raises:
            QuotaExhaustedError: If a routine command had no budget.
            DeviceCommandError: If every attempt was rejected.
        """
        command = CommandKind.POWER_ON if on else CommandKind.POWER_OFF
        max_attempts = max(1, self._settings.write_max_attempts)
        now = now if now is not None else time.time()
        started = time.monotonic()
        last_error: Exception | None = None

        for attempt in range(max_attempts):
            if attempt > 0:
                delay = self._settings.backoff_base_seconds * 2 ** (attempt - 1)
                if delay >= self._remaining(deadline):
                    break
                await asyncio.sleep(delay)
            if not await self._acquire(critical, now + time.monotonic() - started):
                await self._defer(command, None)
                raise QuotaExhaustedError(f"no call budget for {command.value}")
            try:
                await asyncio.wait_for(
                    self._adapter.set_power(on),
                    timeout=min(self._write_timeout, max(self._remaining(deadline), 0.001)),
                )
            except (asyncio.TimeoutError, DeviceCommandError) as e:
                last_error = e
                logger.warning(
                    "power_command_failed",
                    command=command.value,
                    attempt=attempt + 1,
                    error=str(e) or type(e).__name__,
                )
                continue
            logger.info("power_command_sent", command=command.value, critical=critical)
            return

        logger.critical("power_command_exhausted", command=command.value, error=str(last_error))
        raise DeviceCommandError(f"{command.value} failed after {max_attempts} attempt(s): {last_error}")
