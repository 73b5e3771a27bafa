"""Control cycle orchestrator -- one price-driven setpoint decision per call.

Each cycle runs the stages in order:
  1. SETTINGS: load AutomationSettings fresh from the settings store
  2. PRICES:   fetch the rolling window from the price feed and classify
  3. STATUS:   resolve device status through the arbiter
  4. DECIDE:   price shutdown/recovery, or the setpoint decision engine
  5. DISPATCH: write and verify through the command dispatcher
  6. LOG:      append the DecisionRecord to the decision log

Every cycle ends in exactly one DecisionRecord with a human-readable reason,
including failed ones. The orchestrator does not schedule itself; the
CycleScheduler (or any external trigger) calls run_cycle.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from poolheat.control.decision import check_bounds, decide_setpoint
from poolheat.control.schedule import ScheduleEntry, plan_schedule
from poolheat.data.base import is_setpoint_change
from poolheat.exceptions import (
    DeviceCommandError,
    DeviceUnavailableError,
    InvalidCommandError,
    QuotaExhaustedError,
    SetpointBoundsViolation,
)
from poolheat.logging import cycle_context, get_logger
from poolheat.models import (
    AutomationSettings,
    ClassificationResult,
    CommandKind,
    CycleState,
    DecisionOutcome,
    DecisionRecord,
    DeviceStatus,
    PowerState,
    PriceClassification,
    PricePoint,
)

if TYPE_CHECKING:
    from poolheat.config import ControlSettings, PriceSettings
    from poolheat.data.base import DecisionLog, SettingsStore
    from poolheat.device.arbiter import DeviceStateArbiter
    from poolheat.device.dispatcher import CommandDispatcher
    from poolheat.device.quota import QuotaTracker
    from poolheat.guard import RunGuard
    from poolheat.pricing.classifier import PriceClassifier
    from poolheat.pricing.feed import PriceFeed

logger = get_logger(__name__)

_EMERGENCY_STOP_PREFIX = "emergency stop"
_MANUAL_OVERRIDE_PREFIX = "manual override"


@dataclass
class ControlState:
    """Cross-cycle state the decision engine needs, restored from the decision log."""

    last_change_at: float | None = None
    last_setpoint: Decimal | None = None
    shutdown_active: bool = False  # pump powered off by the price shutdown
    halted: bool = False  # operator emergency stop; cleared by resume()


class Orchestrator:
    """Runs control cycles over injected collaborators.

    Args:
        control: Cycle budget and price fetch timeout.
        price_settings: Bidding zone.
        price_feed: Source of price points.
        classifier: Price classifier.
        arbiter: Device status arbitration.
        dispatcher: Command dispatcher for the device.
        settings_store: Source of AutomationSettings, read every cycle.
        decision_log: Audit log every cycle's record is appended to.
        guard: Prevents overlapping cycles.
        quota: Call budget (reported by get_status).
    """

    def __init__(
        self,
        control: ControlSettings,
        price_settings: PriceSettings,
        price_feed: PriceFeed,
        classifier: PriceClassifier,
        arbiter: DeviceStateArbiter,
        dispatcher: CommandDispatcher,
        settings_store: SettingsStore,
        decision_log: DecisionLog,
        guard: RunGuard,
        quota: QuotaTracker | None = None,
    ) -> None:
        self._control = control
        self._price_settings = price_settings
        self._price_feed = price_feed
        self._classifier = classifier
        self._arbiter = arbiter
        self._dispatcher = dispatcher
        self._settings_store = settings_store
        self._decision_log = decision_log
        self._guard = guard
        self._quota = quota
        self._state = ControlState()
        self._settings = AutomationSettings()
        self._cycle_state = CycleState.LOGGED
        self._last_record: DecisionRecord | None = None
        # what the running cycle knows so far, for the budget-exceeded record
        self._decided: DecisionRecord | None = None
        self._classification: ClassificationResult | None = None
        self._status: DeviceStatus | None = None

    @property
    def state(self) -> ControlState:
        return replace(self._state)

    @property
    def last_record(self) -> DecisionRecord | None:
        return self._last_record

    async def restore_state(self) -> None:
        """Rebuild ControlState from the decision log after a restart.

        The anti-short-cycle timer restarts from the newest routine change;
        emergency corrections only update the last known setpoint.
        """
        last = await self._decision_log.last_setpoint_change()
        if last is not None:
            self._state.last_setpoint = last.applied_setpoint
        routine = await self._decision_log.last_setpoint_change(include_emergency=False)
        if routine is not None:
            self._state.last_change_at = routine.timestamp

        for record in await self._decision_log.recent(100):
            if record.command == CommandKind.SET_SETPOINT or record.outcome != DecisionOutcome.APPLIED:
                continue
            if record.reason.startswith(_MANUAL_OVERRIDE_PREFIX):
                break
            if record.command == CommandKind.POWER_OFF:
                if record.reason.startswith(_EMERGENCY_STOP_PREFIX):
                    self._state.halted = True
                else:
                    self._state.shutdown_active = True
            break

        logger.info(
            "control_state_restored",
            last_change_at=self._state.last_change_at,
            last_setpoint=str(self._state.last_setpoint),
            shutdown_active=self._state.shutdown_active,
            halted=self._state.halted,
        )

    # ──────────────────────────────────────────────
    # Cycle
    # ──────────────────────────────────────────────

    async def run_cycle(self, now: float | None = None) -> DecisionRecord:
        """Run one control cycle and return its DecisionRecord.

        Raises:
            CycleInProgressError: If another cycle is running.
            SetpointBoundsViolation: If a write would leave the configured
                bounds (internal bug, never masked).
        """
        now = now if now is not None else time.time()
        async with self._guard.hold(now):
            with cycle_context():
                self._cycle_state = CycleState.START
                self._decided = None
                self._classification = None
                self._status = None
                budget = self._control.cycle_budget_seconds
                deadline = time.monotonic() + budget
                try:
                    async with asyncio.timeout(budget):
                        record = await self._cycle(now, deadline)
                except TimeoutError:
                    logger.error("cycle_budget_exceeded", budget=budget)
                    record = self._budget_exceeded(now)
                except SetpointBoundsViolation as e:
                    logger.critical("setpoint_bounds_violation", error=str(e))
                    raise
                except Exception as e:
                    logger.error("cycle_error", error=str(e), exc_info=True)
                    record = self._record(
                        now,
                        None,
                        DecisionOutcome.FAILED,
                        f"cycle error: {e}",
                        previous=self._state.last_setpoint,
                    )

                await self._log(record)
                self._cycle_state = CycleState.LOGGED
                self._last_record = record
                logger.info(
                    "cycle_complete",
                    outcome=record.outcome.value,
                    command=record.command.value,
                    previous=str(record.previous_setpoint),
                    applied=str(record.applied_setpoint),
                    reason=record.reason,
                )
                return record

    async def _cycle(self, now: float, deadline: float) -> DecisionRecord:
        settings = await self._load_settings()
        now_dt = datetime.fromtimestamp(now, tz=UTC)

        history, feed_note = await self._fetch_prices(settings, now_dt)
        classification = self._classifier.classify(history, now_dt, settings)
        self._classification = classification
        price_reason = classification.reason + (f"; {feed_note}" if feed_note else "")

        if self._state.halted:
            return self._halted_record(now, classification, None, price_reason)

        try:
            arbitration = await self._arbiter.resolve(now)
        except DeviceUnavailableError as e:
            return self._record(
                now,
                classification,
                DecisionOutcome.FAILED,
                f"{price_reason}; {e}",
                previous=self._state.last_setpoint,
            )
        self._cycle_state = CycleState.STATUS_RESOLVED
        status = arbitration.status
        self._status = status
        status_note = arbitration.describe()

        if not status.online:
            return self._record(
                now,
                classification,
                DecisionOutcome.SKIPPED_NO_CHANGE,
                f"{price_reason}; device offline; {status_note}",
                previous=status.setpoint,
                status=status,
            )

        if self._state.halted:
            return self._halted_record(now, classification, status, price_reason)

        power_record = await self._check_shutdown(
            now, deadline, settings, classification, status, f"{price_reason}; {status_note}"
        )
        if power_record is not None:
            return power_record

        record = decide_setpoint(
            classification.classification,
            settings,
            status.setpoint,
            self._state.last_change_at,
            now,
            price=classification.price,
            status_source=status.source_kind,
        )
        record = replace(record, reason=f"{price_reason}; {record.reason}; {status_note}")
        self._cycle_state = CycleState.DECIDED
        check_bounds(record, settings)

        if self._state.halted and record.changes_setpoint:
            return self._halted_record(now, classification, status, price_reason)
        self._decided = record
        record = await self._dispatcher.dispatch(record, settings, deadline)
        self._cycle_state = record.cycle_state
        self._note_change(record)
        return record

    def _halted_record(
        self,
        now: float,
        classification: ClassificationResult,
        status: DeviceStatus | None,
        price_reason: str,
    ) -> DecisionRecord:
        return self._record(
            now,
            classification,
            DecisionOutcome.SKIPPED_NO_CHANGE,
            f"{price_reason}; controller halted by emergency stop",
            previous=status.setpoint if status is not None else self._state.last_setpoint,
            status=status,
        )

    def _note_change(self, record: DecisionRecord) -> None:
        """Track a setpoint change; only routine changes restart the anti-short-cycle timer."""
        if not is_setpoint_change(record):
            return
        self._state.last_setpoint = record.applied_setpoint
        if not record.emergency:
            self._state.last_change_at = record.timestamp

    def _budget_exceeded(self, now: float) -> DecisionRecord:
        """Record for a cycle cut off by its budget.

        A setpoint write that already reached the adapter may have been
        applied: it is recorded like an unconfirmed write (TIMEOUT_PENDING)
        and counted as a change so the next cycle does not rewrite it at once.
        """
        decided = self._decided
        sent = self._dispatcher.last_write
        if decided is not None and sent is not None and sent[0] == decided.id:
            record = replace(
                decided,
                applied_setpoint=sent[1],
                reason=f"{decided.reason}; cycle budget exceeded during dispatch, confirmation pending",
                cycle_state=CycleState.TIMEOUT_PENDING,
                confirmation_pending=True,
            )
            self._cycle_state = CycleState.TIMEOUT_PENDING
            self._note_change(record)
            return record

        status = self._status
        reason = "cycle budget exceeded"
        if decided is not None:
            reason = f"{decided.reason}; {reason} before the write was sent"
        elif self._classification is not None:
            reason = f"{self._classification.reason}; {reason}"
        return self._record(
            now,
            self._classification,
            DecisionOutcome.FAILED,
            reason,
            previous=status.setpoint if status is not None else self._state.last_setpoint,
            status=status,
        )

    async def _load_settings(self) -> AutomationSettings:
        try:
            self._settings = await self._settings_store.load()
        except Exception as e:
            logger.error("settings_load_failed", error=str(e), using="last loaded settings")
        return self._settings

    async def _fetch_prices(
        self, settings: AutomationSettings, now_dt: datetime, ahead: timedelta = timedelta(hours=1)
    ) -> tuple[list[PricePoint], str]:
        start = now_dt - timedelta(days=settings.rolling_window_days)
        end = now_dt + ahead
        try:
            points = await asyncio.wait_for(
                self._price_feed.fetch_prices(self._price_settings.bidding_zone, start, end),
                timeout=self._control.price_fetch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("price_fetch_timeout", zone=self._price_settings.bidding_zone)
            return [], "price feed timed out"
        except Exception as e:
            logger.warning("price_fetch_failed", zone=self._price_settings.bidding_zone, error=str(e))
            return [], f"price feed unavailable ({e})"
        return points, ""

    async def _check_shutdown(
        self,
        now: float,
        deadline: float,
        settings: AutomationSettings,
        classification: ClassificationResult,
        status: DeviceStatus,
        reason: str,
    ) -> DecisionRecord | None:
        """Power off at/above the shutdown price, power back on once it drops.

        Returns a record when a power command was handled, None to continue
        with the setpoint decision.
        """
        threshold = settings.shutdown_price_threshold
        price = classification.price
        above = threshold is not None and price is not None and price >= threshold

        if settings.enabled and above:
            note = f"price {price} at/above shutdown threshold {threshold}"
            if status.power_state == PowerState.OFF:
                self._state.shutdown_active = True
                return self._record(
                    now,
                    classification,
                    DecisionOutcome.SKIPPED_NO_CHANGE,
                    f"{reason}; {note}, device already off",
                    previous=status.setpoint,
                    status=status,
                )
            return await self._power(
                False, True, now, deadline, classification, status, f"{note}, powering off; {reason}"
            )

        if self._state.shutdown_active and not above:
            if status.power_state == PowerState.OFF:
                return await self._power(
                    True,
                    False,
                    now,
                    deadline,
                    classification,
                    status,
                    f"price below shutdown threshold again, powering on; {reason}",
                )
            self._state.shutdown_active = False
        return None

    async def _power(
        self,
        on: bool,
        critical: bool,
        now: float,
        deadline: float,
        classification: ClassificationResult | None,
        status: DeviceStatus | None,
        reason: str,
    ) -> DecisionRecord:
        command = CommandKind.POWER_ON if on else CommandKind.POWER_OFF
        previous = status.setpoint if status is not None else self._state.last_setpoint
        try:
            await self._dispatcher.set_power(on, critical=critical, now=now, deadline=deadline)
        except QuotaExhaustedError:
            outcome, reason, cycle_state = (
                DecisionOutcome.DEFERRED_QUOTA,
                f"{reason}; call budget exhausted, intent recorded",
                CycleState.SKIPPED,
            )
        except DeviceCommandError as e:
            outcome, reason, cycle_state = (
                DecisionOutcome.FAILED,
                f"{reason}; {e}",
                CycleState.DISPATCHED,
            )
        else:
            outcome, cycle_state = DecisionOutcome.APPLIED, CycleState.DISPATCHED
            if not reason.startswith((_EMERGENCY_STOP_PREFIX, _MANUAL_OVERRIDE_PREFIX)):
                self._state.shutdown_active = not on

        self._cycle_state = cycle_state
        return replace(
            self._record(now, classification, outcome, reason, previous=previous, status=status),
            command=command,
            emergency=critical,
            proposed_setpoint=previous,
            cycle_state=cycle_state,
        )

    def _record(
        self,
        now: float,
        classification: ClassificationResult | None,
        outcome: DecisionOutcome,
        reason: str,
        previous: Decimal | None = None,
        status: DeviceStatus | None = None,
    ) -> DecisionRecord:
        return DecisionRecord(
            timestamp=now,
            price=classification.price if classification is not None else None,
            classification=(
                classification.classification
                if classification is not None
                else PriceClassification.NORMAL
            ),
            previous_setpoint=previous,
            proposed_setpoint=previous,
            applied_setpoint=None,
            reason=reason,
            outcome=outcome,
            status_source=status.source_kind if status is not None else None,
            cycle_state=CycleState.SKIPPED,
        )

    async def _log(self, record: DecisionRecord) -> None:
        try:
            await self._decision_log.append(record)
        except Exception as e:
            logger.error("decision_log_append_failed", record_id=record.id, error=str(e))

    # ──────────────────────────────────────────────
    # Operator actions
    # ──────────────────────────────────────────────

    async def emergency_shutdown(self, reason: str, now: float | None = None) -> DecisionRecord:
        """Power the pump off immediately and halt automation until resume().

        Runs outside the run guard so it is never blocked by a cycle in
        progress. The stop takes precedence over that cycle: the halt flag is
        set before the power-off is sent, and the cycle checks it again after
        deciding, so it sends no setpoint or power command once the stop has
        begun. A setpoint write already handed to the adapter is not recalled;
        it cannot switch the pump back on.
        """
        now = now if now is not None else time.time()
        logger.critical("emergency_stop_triggered", reason=reason)
        self._state.halted = True
        record = await self._power(
            False,
            True,
            now,
            time.monotonic() + self._control.cycle_budget_seconds,
            None,
            None,
            f"{_EMERGENCY_STOP_PREFIX}: {reason}",
        )
        await self._log(record)
        self._last_record = record
        return record

    async def manual_override(
        self,
        setpoint: Decimal | None = None,
        power: bool | None = None,
        now: float | None = None,
    ) -> list[DecisionRecord]:
        """Send an operator's setpoint and/or power command through the dispatcher.

        The override holds the run guard, so it never overlaps a cycle. It is
        a routine command: it needs call budget, and a setpoint change
        restarts the anti-short-cycle timer. Later cycles decide as usual.

        Returns:
            One logged record per command, power first.

        Raises:
            InvalidCommandError: If nothing was requested, the setpoint lies
                outside [min_temp, max_temp], or power-on is requested while
                an emergency stop is in effect.
            CycleInProgressError: If a cycle is running.
        """
        if setpoint is None and power is None:
            raise InvalidCommandError("override needs a setpoint or a power state")
        now = now if now is not None else time.time()

        async with self._guard.hold(now):
            settings = await self._load_settings()
            if setpoint is not None and not settings.min_temp <= setpoint <= settings.max_temp:
                raise InvalidCommandError(
                    f"setpoint {setpoint} outside [{settings.min_temp}, {settings.max_temp}]"
                )
            if power and self._state.halted:
                raise InvalidCommandError("controller halted by emergency stop; resume first")

            logger.info(
                "manual_override_requested",
                setpoint=str(setpoint) if setpoint is not None else None,
                power=power,
            )
            deadline = time.monotonic() + self._control.cycle_budget_seconds
            try:
                status = (await self._arbiter.resolve(now)).status
            except DeviceUnavailableError as e:
                logger.warning("manual_override_status_unknown", error=str(e))
                status = None
            classification = self._last_record.classification if self._last_record else None

            records = []
            if power is not None:
                record = await self._power(
                    power,
                    False,
                    now,
                    deadline,
                    None,
                    status,
                    f"{_MANUAL_OVERRIDE_PREFIX}: power {'on' if power else 'off'}",
                )
                records.append(record)
            if setpoint is not None:
                previous = status.setpoint if status is not None else self._state.last_setpoint
                record = DecisionRecord(
                    timestamp=now,
                    price=None,
                    classification=classification or PriceClassification.NORMAL,
                    previous_setpoint=previous,
                    proposed_setpoint=setpoint,
                    applied_setpoint=None,
                    reason=f"{_MANUAL_OVERRIDE_PREFIX}: setpoint {setpoint}",
                    outcome=DecisionOutcome.APPLIED,
                    status_source=status.source_kind if status is not None else None,
                    cycle_state=CycleState.DECIDED,
                )
                if setpoint == previous:
                    record = replace(
                        record,
                        outcome=DecisionOutcome.SKIPPED_NO_CHANGE,
                        reason=f"{record.reason}; already set",
                        cycle_state=CycleState.SKIPPED,
                    )
                else:
                    record = await self._dispatcher.dispatch(record, settings, deadline)
                    self._note_change(record)
                records.append(record)

            for record in records:
                await self._log(record)
            self._cycle_state = CycleState.LOGGED
            self._last_record = records[-1]
            return records

    async def plan_schedule(self, now: float | None = None, hours: int = 24) -> list[ScheduleEntry]:
        """Day-ahead setpoint plan from the published prices (no device calls)."""
        now = now if now is not None else time.time()
        now_dt = datetime.fromtimestamp(now, tz=UTC)
        settings = await self._load_settings()
        history, feed_note = await self._fetch_prices(settings, now_dt, timedelta(hours=hours))
        if feed_note:
            logger.warning("schedule_prices_unavailable", reason=feed_note)
        return plan_schedule(
            history,
            now_dt,
            settings,
            self._state.last_setpoint,
            self._state.last_change_at,
            hours,
        )

    def resume(self) -> None:
        """Clear an emergency stop; the next cycle decides normally."""
        if self._state.halted:
            logger.info("emergency_stop_cleared")
        self._state.halted = False

    def get_status(self) -> dict:
        """Current controller status for the control API."""
        last = self._last_record
        return {
            "cycle_running": self._guard.locked,
            "cycle_state": self._cycle_state.value,
            "halted": self._state.halted,
            "shutdown_active": self._state.shutdown_active,
            "last_change_at": self._state.last_change_at,
            "last_setpoint": str(self._state.last_setpoint)
            if self._state.last_setpoint is not None
            else None,
            "last_outcome": last.outcome.value if last is not None else None,
            "last_reason": last.reason if last is not None else None,
            "quota": self._quota.usage_stats() if self._quota is not None else None,
        }
