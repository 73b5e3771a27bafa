"""POST/PUT endpoints: manual cycle trigger, override, settings updates, emergency stop, telemetry push."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import structlog
from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from poolheat.dashboard.routes.api import record_to_dict, status_to_dict
from poolheat.device.realtime import parse_telemetry
from poolheat.exceptions import (
    CycleInProgressError,
    InvalidCommandError,
    InvalidSettingsError,
    SetpointBoundsViolation,
)
from poolheat.models import settings_from_dict, settings_to_dict

log = structlog.get_logger(__name__)

router = APIRouter()


class EmergencyStopRequest(BaseModel):
    reason: str = "operator request"


class OverrideRequest(BaseModel):
    setpoint: Decimal | None = None
    power: bool | None = None


class TelemetryPoint(BaseModel):
    code: str
    value: Any = None
    t: int | None = None  # epoch milliseconds


class TelemetryPush(BaseModel):
    """Device cloud status push (``devId`` plus a list of data points)."""

    dev_id: str | None = Field(default=None, alias="devId")
    status: list[TelemetryPoint]


@router.post("/cycle")
async def trigger_cycle(request: Request) -> JSONResponse:
    """Run one control cycle now and return its DecisionRecord."""
    orchestrator = request.app.state.orchestrator
    try:
        record = await orchestrator.run_cycle()
    except CycleInProgressError as e:
        log.info("manual_cycle_rejected", reason=str(e))
        return JSONResponse(status_code=409, content={"error": str(e)})
    except SetpointBoundsViolation as e:
        log.critical("manual_cycle_bounds_violation", error=str(e))
        return JSONResponse(status_code=500, content={"error": str(e)})
    log.info("cycle_triggered_via_api", outcome=record.outcome.value)
    return JSONResponse(content=record_to_dict(record))


@router.post("/override")
async def manual_override(request: Request, body: OverrideRequest) -> JSONResponse:
    """Send an operator setpoint and/or power command through the dispatcher."""
    orchestrator = request.app.state.orchestrator
    try:
        records = await orchestrator.manual_override(setpoint=body.setpoint, power=body.power)
    except InvalidCommandError as e:
        log.warning("override_rejected", error=str(e))
        return JSONResponse(status_code=422, content={"error": str(e)})
    except CycleInProgressError as e:
        log.info("override_rejected", reason=str(e))
        return JSONResponse(status_code=409, content={"error": str(e)})
    log.info("override_applied_via_api", outcomes=[r.outcome.value for r in records])
    return JSONResponse(content=[record_to_dict(r) for r in records])


@router.put("/settings")
async def update_settings(
    request: Request, changes: dict[str, Any] = Body(...)
) -> JSONResponse:
    """Update automation settings; omitted fields keep their current value.

    Takes effect on the next cycle.
    """
    store = request.app.state.settings_store
    try:
        current = await store.load()
        updated = settings_from_dict(changes, base=current)
    except InvalidSettingsError as e:
        log.warning("settings_update_rejected", error=str(e))
        return JSONResponse(status_code=422, content={"error": str(e)})
    await store.save(updated)
    log.info("settings_updated_via_api", fields=sorted(changes))
    return JSONResponse(content=settings_to_dict(updated))


@router.post("/emergency-stop")
async def emergency_stop(
    request: Request, body: EmergencyStopRequest | None = None
) -> JSONResponse:
    """Power the pump off now and halt automation until resumed."""
    reason = body.reason if body is not None else EmergencyStopRequest().reason
    record = await request.app.state.orchestrator.emergency_shutdown(reason)
    return JSONResponse(content=record_to_dict(record))


@router.post("/resume")
async def resume(request: Request) -> JSONResponse:
    """Clear an emergency stop."""
    orchestrator = request.app.state.orchestrator
    orchestrator.resume()
    return JSONResponse(content=orchestrator.get_status())


@router.post("/webhook/telemetry")
async def ingest_telemetry(request: Request, push: TelemetryPush) -> JSONResponse:
    """Ingest a real-time status push into the cache and the status store."""
    state = request.app.state
    device_id = push.dev_id or state.device_id
    if device_id != state.device_id:
        log.warning("telemetry_unknown_device", device_id=device_id)
        return JSONResponse(status_code=404, content={"error": f"unknown device {device_id}"})

    stamps = [p.t for p in push.status if p.t is not None]
    observed_at = max(stamps) / 1000 if stamps else None
    status = parse_telemetry(
        device_id,
        [p.model_dump(include={"code", "value"}) for p in push.status],
        observed_at=observed_at,
    )
    await state.realtime_cache.deposit(status)
    try:
        await state.status_store.save_status(status)
    except Exception as e:
        log.error("telemetry_persist_failed", error=str(e))
    log.debug("telemetry_ingested", device_id=device_id, codes=[p.code for p in push.status])
    return JSONResponse(content=status_to_dict(status))
