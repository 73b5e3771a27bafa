"""JSON read endpoints: decision log, controller status, settings, device."""

from __future__ import annotations

import time
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from poolheat.models import DecisionRecord, DeviceStatus, settings_to_dict

log = structlog.get_logger(__name__)

router = APIRouter()


def _jsonable(obj: Any) -> Any:
    """Recursively convert Decimal, datetime and Enum values for JSON serialization."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_jsonable(item) for item in obj]
    return obj


def record_to_dict(record: DecisionRecord) -> dict:
    return _jsonable(asdict(record))


def status_to_dict(status: DeviceStatus | None) -> dict | None:
    return _jsonable(asdict(status)) if status is not None else None


@router.get("/decisions")
async def get_decisions(
    request: Request, limit: int = Query(50, ge=1, le=500)
) -> JSONResponse:
    """Most recent decision records, newest first."""
    records = await request.app.state.decision_log.recent(limit)
    return JSONResponse(content=[record_to_dict(r) for r in records])


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Controller state, call budget and pending command intents."""
    state = request.app.state
    status = state.orchestrator.get_status()
    intents = await state.intent_store.pending_intents(state.device_id)
    status["pending_intents"] = [_jsonable(asdict(i)) for i in intents]
    return JSONResponse(content=_jsonable(status))


@router.get("/settings")
async def get_settings(request: Request) -> JSONResponse:
    """Automation settings the next cycle will use."""
    settings = await request.app.state.settings_store.load()
    return JSONResponse(content=settings_to_dict(settings))


@router.get("/device")
async def get_device(request: Request) -> JSONResponse:
    """Last pushed and last persisted device status (no device call is made)."""
    state = request.app.state
    now = time.time()
    realtime = await state.realtime_cache.get(state.device_id, now)
    persisted = await state.status_store.latest_status(state.device_id)
    return JSONResponse(
        content={
            "device_id": state.device_id,
            "realtime": status_to_dict(realtime),
            "realtime_age_seconds": now - realtime.observed_at if realtime is not None else None,
            "persisted": status_to_dict(persisted),
        }
    )


@router.get("/schedule")
async def get_schedule(
    request: Request, hours: int = Query(24, ge=1, le=48)
) -> JSONResponse:
    """Planned setpoint per upcoming price interval (no device call is made)."""
    entries = await request.app.state.orchestrator.plan_schedule(hours=hours)
    return JSONResponse(
        content={
            "hours": hours,
            "entries": [_jsonable(asdict(entry)) for entry in entries],
        }
    )
