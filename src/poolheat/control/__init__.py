"""Setpoint decision engine and day-ahead planning (pure functions)."""

from poolheat.control.decision import (
    SETPOINT_STEP,
    allowed_step,
    check_bounds,
    clamp,
    decide_setpoint,
    naive_target,
)
from poolheat.control.schedule import ScheduleEntry, plan_schedule

__all__ = [
    "SETPOINT_STEP",
    "ScheduleEntry",
    "allowed_step",
    "check_bounds",
    "clamp",
    "decide_setpoint",
    "naive_target",
    "plan_schedule",
]
