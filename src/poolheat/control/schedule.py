"""Day-ahead setpoint plan from the published hourly prices.

Each upcoming price interval is classified against one baseline computed
at planning time and run through decide_setpoint, carrying the planned
setpoint and change time forward from hour to hour. The plan assumes every
change it proposes is applied. It is a forecast for the operator and is
never dispatched; the control cycle still decides each hour on its own.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from poolheat.control.decision import decide_setpoint
from poolheat.models import (
    AutomationSettings,
    DecisionOutcome,
    PriceClassification,
    PricePoint,
)
from poolheat.pricing.baseline import compute_baseline
from poolheat.pricing.classifier import classify_price


@dataclass(frozen=True)
class ScheduleEntry:
    """Planned outcome for one price interval.

    ``setpoint`` is the setpoint expected to be active during the interval,
    None when the pump is planned off or nothing is known yet.
    """

    start: datetime
    end: datetime
    price: Decimal
    classification: PriceClassification
    setpoint: Decimal | None
    outcome: DecisionOutcome
    shutdown: bool
    reason: str


def plan_schedule(
    history: list[PricePoint],
    now: datetime,
    settings: AutomationSettings,
    current_setpoint: Decimal | None,
    last_change_at: float | None,
    hours: int = 24,
) -> list[ScheduleEntry]:
    """Plan the setpoint for every price interval in the next ``hours``.

    Args:
        history: Price points covering the rolling window and the horizon.
        now: Planning time (timezone-aware).
        settings: Automation settings the plan is made with.
        current_setpoint: Setpoint active now, if known.
        last_change_at: Unix time of the last routine change.
        hours: Planning horizon.

    Returns:
        One entry per interval overlapping [now, now + hours), in start order.
    """
    baseline = compute_baseline(history, now, settings.rolling_window_days)
    horizon = now + timedelta(hours=hours)
    upcoming = sorted(
        (p for p in history if p.end > now and p.start < horizon), key=lambda p: p.start
    )
    threshold = settings.shutdown_price_threshold

    setpoint = current_setpoint
    entries: list[ScheduleEntry] = []
    for point in upcoming:
        at = max(point.start, now).timestamp()
        result = classify_price(point.value, baseline, settings)

        if settings.enabled and threshold is not None and point.value >= threshold:
            entries.append(
                ScheduleEntry(
                    start=point.start,
                    end=point.end,
                    price=point.value,
                    classification=result.classification,
                    setpoint=None,
                    outcome=DecisionOutcome.SKIPPED_NO_CHANGE,
                    shutdown=True,
                    reason=f"{result.reason}; price {point.value} at/above shutdown threshold {threshold}",
                )
            )
            continue

        record = decide_setpoint(
            result.classification,
            settings,
            setpoint,
            last_change_at,
            at,
            price=point.value,
        )
        if record.changes_setpoint:
            setpoint = record.proposed_setpoint
            last_change_at = at
        entries.append(
            ScheduleEntry(
                start=point.start,
                end=point.end,
                price=point.value,
                classification=result.classification,
                setpoint=setpoint,
                outcome=record.outcome,
                shutdown=False,
                reason=f"{result.reason}; {record.reason}",
            )
        )
    return entries
