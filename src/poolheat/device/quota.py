"""Device cloud call budget shared by the arbiter's read path and the dispatcher's write path.

The check ("is there budget and has the minimum interval elapsed?") and the
increment happen in one operation under an asyncio.Lock, so two coroutines
can never both spend the last call. Budget resets on a fixed window.

The minimum interval only spaces out status pulls. Setpoint writes and their
confirmation reads are bounded by the window count alone: a cycle that has
just read the device must still be able to write to it.
"""

import asyncio
import time
from dataclasses import replace

from poolheat.config import QuotaSettings
from poolheat.logging import get_logger
from poolheat.models import QuotaState

logger = get_logger(__name__)


class QuotaTracker:
    """Fixed-window call budget with a minimum inter-call interval.

    Args:
        settings: Calls per window, window length and minimum interval.
    """

    def __init__(self, settings: QuotaSettings) -> None:
        self._settings = settings
        self._state = QuotaState()
        self._lock = asyncio.Lock()

    def _roll_window(self, now: float) -> None:
        if now - self._state.window_started_at >= self._settings.window_seconds:
            if self._state.calls_used_in_window:
                logger.info(
                    "quota_window_reset",
                    calls_used=self._state.calls_used_in_window,
                )
            self._state.calls_used_in_window = 0
            self._state.window_started_at = now

    def _denial_reason(self, now: float, enforce_interval: bool) -> str | None:
        if self._state.calls_used_in_window >= self._settings.max_calls_per_window:
            return "window_exhausted"
        last = self._state.last_call_at
        if enforce_interval and last is not None and now - last < self._settings.min_interval_seconds:
            return "min_interval"
        return None

    async def try_acquire(self, now: float | None = None, enforce_interval: bool = True) -> bool:
        """Atomically reserve one call if the budget allows it.

        Args:
            now: Unix time of the call.
            enforce_interval: Also require min_interval_seconds since the
                previous call. Writes pass False and are limited by the
                window count only.

        Returns:
            True if a call was reserved (counter already incremented and
            last_call_at updated), False otherwise.
        """
        now = now if now is not None else time.time()
        async with self._lock:
            self._roll_window(now)
            reason = self._denial_reason(now, enforce_interval)
            if reason is not None:
                logger.info(
                    "quota_call_denied",
                    reason=reason,
                    calls_used=self._state.calls_used_in_window,
                    limit=self._settings.max_calls_per_window,
                )
                return False
            self._state.calls_used_in_window += 1
            self._state.last_call_at = now
            return True

    async def force_acquire(self, now: float | None = None) -> None:
        """Record a call that must happen regardless of budget (critical commands).

        The counter may exceed the limit; routine calls stay blocked until
        the window resets.
        """
        now = now if now is not None else time.time()
        async with self._lock:
            self._roll_window(now)
            self._state.calls_used_in_window += 1
            self._state.last_call_at = now
            if self._state.calls_used_in_window > self._settings.max_calls_per_window:
                logger.warning(
                    "quota_overridden_for_critical_call",
                    calls_used=self._state.calls_used_in_window,
                    limit=self._settings.max_calls_per_window,
                )

    def remaining(self, now: float | None = None) -> int:
        """Calls left in the current window (does not reserve anything)."""
        now = now if now is not None else time.time()
        if now - self._state.window_started_at >= self._settings.window_seconds:
            return self._settings.max_calls_per_window
        return max(0, self._settings.max_calls_per_window - self._state.calls_used_in_window)

    @property
    def state(self) -> QuotaState:
        """Copy of the current quota state."""
        return replace(self._state)

    def usage_stats(self, now: float | None = None) -> dict:
        """Budget summary for the control API."""
        now = now if now is not None else time.time()
        state = self._state
        in_window = now - state.window_started_at < self._settings.window_seconds
        return {
            "calls_used_in_window": state.calls_used_in_window if in_window else 0,
            "max_calls_per_window": self._settings.max_calls_per_window,
            "remaining": self.remaining(now),
            "window_started_at": state.window_started_at if in_window else None,
            "last_call_at": state.last_call_at,
            "can_call_now": self.remaining(now) > 0
            and (
                state.last_call_at is None
                or now - state.last_call_at >= self._settings.min_interval_seconds
            ),
        }
