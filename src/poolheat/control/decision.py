"""Setpoint decision engine: price classification -> safe target setpoint.

Pure functions of their inputs. All mutable state (current setpoint, time of
the last applied change) is passed in by the caller; nothing is read from
module globals, so every rule is independently testable.

Fixed rule precedence (each rule short-circuits the ones after it):
  0. automation disabled      -> SKIPPED_NO_CHANGE
  1. naive target from classification
  2. clamp to [min_temp, max_temp]
  3. hysteresis dead-band     -> SKIPPED_NO_CHANGE
  4. anti-short-cycle         -> SKIPPED_ANTI_CYCLE
  5. max change per hour      -> SKIPPED_RATE_LIMIT (partial step toward target)
  6. otherwise                -> APPLIED

Emergency decisions skip 3-5 but are still clamped. A current setpoint
outside [min_temp, max_temp] is corrected as an emergency. An unknown
current setpoint skips 3 and 5 only: anti-short-cycle still holds.

CRITICAL: All computations use Decimal. Never use float for setpoints.
"""

from decimal import ROUND_DOWN, Decimal

from poolheat.exceptions import SetpointBoundsViolation
from poolheat.models import (
    AutomationSettings,
    DecisionOutcome,
    DecisionRecord,
    PriceClassification,
    SourceKind,
)

#: Device setpoint resolution; partial rate-limited steps are rounded toward the current value.
SETPOINT_STEP = Decimal("0.1")

_SECONDS_PER_HOUR = Decimal("3600")


def naive_target(
    classification: PriceClassification, settings: AutomationSettings
) -> Decimal:
    """Target before any safety rule: base +low_offset / base / base -high_offset."""
    if classification == PriceClassification.LOW:
        return settings.target_base_temp + settings.low_offset
    if classification == PriceClassification.HIGH:
        return settings.target_base_temp - settings.high_offset
    return settings.target_base_temp


def clamp(value: Decimal, lower: Decimal, upper: Decimal) -> Decimal:
    """Clamp value into [lower, upper]."""
    return max(lower, min(upper, value))


def allowed_step(
    settings: AutomationSettings, last_change_at: float | None, now: float
) -> Decimal | None:
    """Largest setpoint move allowed right now, or None when unlimited.

    The budget is max_change_per_hour scaled by the hours elapsed since the
    last applied change; with no recorded change, one hour's worth is allowed.
    A max_change_per_hour of 0 disables rate limiting.
    """
    if settings.max_change_per_hour <= 0:
        return None
    if last_change_at is None:
        return settings.max_change_per_hour
    elapsed_hours = Decimal(str(max(now - last_change_at, 0.0))) / _SECONDS_PER_HOUR
    return settings.max_change_per_hour * elapsed_hours


def _partial_step(current: Decimal, target: Decimal, limit: Decimal) -> Decimal:
    magnitude = limit.quantize(SETPOINT_STEP, rounding=ROUND_DOWN)
    if target > current:
        return current + magnitude
    return current - magnitude


def decide_setpoint(
    classification: PriceClassification,
    settings: AutomationSettings,
    current_setpoint: Decimal | None,
    last_change_at: float | None,
    now: float,
    *,
    price: Decimal | None = None,
    emergency: bool = False,
    status_source: SourceKind | None = None,
) -> DecisionRecord:
    """Decide the next setpoint for one cycle.

    Args:
        classification: Price classification for the current interval.
        settings: Automation settings loaded for this cycle.
        current_setpoint: Setpoint believed to be active (may be approximate
            when the status came from the cache; None if unknown).
        last_change_at: Unix time of the last applied non-emergency change.
        now: Unix time of this decision.
        price: Current price, carried into the record for audit.
        emergency: Skip hysteresis, anti-short-cycle and rate limiting.
        status_source: Where current_setpoint came from, carried into the record.

    Returns:
        DecisionRecord with proposed_setpoint and outcome. applied_setpoint
        is left None; only the dispatcher sets it.
    """

    def record(outcome: DecisionOutcome, proposed: Decimal | None, reason: str) -> DecisionRecord:
        return DecisionRecord(
            timestamp=now,
            price=price,
            classification=classification,
            previous_setpoint=current_setpoint,
            proposed_setpoint=proposed,
            applied_setpoint=None,
            reason=reason,
            outcome=outcome,
            emergency=emergency,
            status_source=status_source,
        )

    if not settings.enabled:
        return record(DecisionOutcome.SKIPPED_NO_CHANGE, current_setpoint, "automation disabled")

    raw_target = naive_target(classification, settings)
    target = clamp(raw_target, settings.min_temp, settings.max_temp)
    target_note = f"{classification.value} price: target {target}"
    if target != raw_target:
        target_note += f" (clamped from {raw_target})"

    if current_setpoint is not None and not (
        settings.min_temp <= current_setpoint <= settings.max_temp
    ):
        emergency = True
        target_note = (
            f"current setpoint {current_setpoint} outside "
            f"[{settings.min_temp}, {settings.max_temp}], correcting; {target_note}"
        )

    def short_cycle_note() -> str | None:
        if last_change_at is None:
            return None
        since_change = now - last_change_at
        if since_change >= settings.anti_short_cycle_minutes * 60:
            return None
        return (
            f"{target_note}; last change {since_change / 60:.1f} min ago, "
            f"anti-short-cycle requires {settings.anti_short_cycle_minutes} min"
        )

    if emergency:
        if current_setpoint is not None and target == current_setpoint:
            return record(DecisionOutcome.SKIPPED_NO_CHANGE, current_setpoint, f"{target_note}; already set")
        return record(DecisionOutcome.APPLIED, target, "emergency: " + target_note)

    if current_setpoint is None:
        # nothing to measure hysteresis or a rate-limited step from
        target_note = "current setpoint unknown: " + target_note
        note = short_cycle_note()
        if note is not None:
            return record(DecisionOutcome.SKIPPED_ANTI_CYCLE, None, note)
        return record(DecisionOutcome.APPLIED, target, target_note)

    delta = target - current_setpoint
    if abs(delta) < settings.hysteresis:
        return record(
            DecisionOutcome.SKIPPED_NO_CHANGE,
            current_setpoint,
            f"{target_note} within hysteresis {settings.hysteresis} of current {current_setpoint}",
        )

    note = short_cycle_note()
    if note is not None:
        return record(DecisionOutcome.SKIPPED_ANTI_CYCLE, current_setpoint, note)

    limit = allowed_step(settings, last_change_at, now)
    if limit is not None and abs(delta) > limit:
        step = _partial_step(current_setpoint, target, limit)
        return record(
            DecisionOutcome.SKIPPED_RATE_LIMIT,
            step,
            f"{target_note}; rate limited to {step} "
            f"(max {settings.max_change_per_hour}/h allows {limit.quantize(Decimal('0.01'))})",
        )

    return record(DecisionOutcome.APPLIED, target, target_note)


def check_bounds(record: DecisionRecord, settings: AutomationSettings) -> None:
    """Assert that a dispatchable record never proposes an out-of-bounds setpoint.

    Called after the decision and before any external effect.

    Raises:
        SetpointBoundsViolation: If the proposed setpoint is out of bounds.
    """
    if not record.changes_setpoint:
        return
    value = record.proposed_setpoint
    if value is not None and not settings.min_temp <= value <= settings.max_temp:
        raise SetpointBoundsViolation(
            f"proposed setpoint {value} outside [{settings.min_temp}, {settings.max_temp}] "
            f"(record {record.id}, outcome {record.outcome.value})"
        )
