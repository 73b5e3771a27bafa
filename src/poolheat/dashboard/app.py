"""FastAPI control API application factory."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from poolheat.dashboard.routes import actions, api


def create_dashboard_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the control API application.

    Route handlers read their collaborators from ``app.state``:
    orchestrator, decision_log, settings_store, status_store, intent_store,
    realtime_cache and device_id. main.py fills them in its lifespan; tests
    set them directly.

    Args:
        lifespan: Optional async context manager for application lifespan events.

    Returns:
        Configured FastAPI application with API and action routes.
    """
    app = FastAPI(
        title="Pool Heat Controller",
        lifespan=lifespan,
    )

    app.include_router(api.router, prefix="/api")
    app.include_router(actions.router, prefix="/actions")

    return app
