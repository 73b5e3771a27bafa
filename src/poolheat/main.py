"""Entry point for the price-driven heat pump controller.

Wires all components together, optionally embeds the FastAPI control API,
and starts the cycle scheduler. When the API is enabled (default), the
scheduler and the API share a single asyncio event loop via uvicorn's
programmatic API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown and SIGUSR1 for emergency stop.

Component wiring order (in _build_components):
1. Storage (ControllerStore on SQLite, or in-memory stores)
2. Device adapter (SimulatedHeatPump)
3. QuotaTracker and RealtimeStatusCache
4. DeviceStateArbiter (realtime -> pull API -> cache)
5. CommandDispatcher
6. Price feed and classifier
7. RunGuard and Orchestrator
8. CycleScheduler and simulated push feed
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from poolheat.config import AppSettings
from poolheat.data.base import (
    InMemoryDecisionLog,
    InMemoryIntentStore,
    InMemoryStatusStore,
    StaticSettingsStore,
)
from poolheat.data.database import ControllerDatabase
from poolheat.data.store import ControllerStore
from poolheat.device.arbiter import (
    DeviceStateArbiter,
    PersistedStatusProvider,
    PolledStatusProvider,
    RealtimeStatusProvider,
)
from poolheat.device.dispatcher import CommandDispatcher
from poolheat.device.quota import QuotaTracker
from poolheat.device.realtime import RealtimeStatusCache, SimulatedPushFeed
from poolheat.device.simulated import SimulatedHeatPump
from poolheat.guard import RunGuard
from poolheat.logging import get_logger, setup_logging
from poolheat.orchestrator import Orchestrator
from poolheat.pricing.classifier import PriceClassifier
from poolheat.pricing.feed import InMemoryPriceFeed, StoredPriceFeed
from poolheat.scheduler import CycleScheduler


async def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all controller components from settings.

    Connects the database when enabled; everything else is constructed
    without I/O.

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    logger = get_logger("poolheat.main")
    defaults = settings.automation.to_automation_settings()

    # 1. Storage
    database: ControllerDatabase | None = None
    store: ControllerStore | None = None
    if settings.database.enabled:
        database = ControllerDatabase(settings.database.path)
        await database.connect()
        store = ControllerStore(database, defaults=defaults)
        decision_log, status_store, settings_store, intent_store = store, store, store, store
        price_feed: Any = StoredPriceFeed(
            store,
            currency=settings.price.currency,
            exchange_rates=settings.price.exchange_rates,
            net_fee_per_kwh=settings.price.net_fee_per_kwh,
            estimated_tax_rate=settings.price.estimated_tax_rate,
        )
    else:
        logger.warning("database_disabled", note="decision log and settings are not persisted")
        decision_log = InMemoryDecisionLog()
        status_store = InMemoryStatusStore()
        settings_store = StaticSettingsStore(defaults)
        intent_store = InMemoryIntentStore()
        price_feed = InMemoryPriceFeed()

    # 2. Device adapter
    device = settings.device
    adapter = SimulatedHeatPump(
        device_id=device.device_id,
        setpoint=device.simulated_initial_setpoint,
        measured_temp=device.simulated_initial_temp,
        apply_delay=device.simulated_apply_delay_seconds,
    )

    # 3. Call budget and push cache
    quota = QuotaTracker(settings.quota)
    realtime_cache = RealtimeStatusCache()

    # 4. Arbiter
    arbiter = DeviceStateArbiter(
        [
            RealtimeStatusProvider(
                realtime_cache, device.device_id, settings.control.realtime_staleness_seconds
            ),
            PolledStatusProvider(adapter, quota, device.read_timeout_seconds),
            PersistedStatusProvider(status_store, device.device_id),
        ],
        provider_timeout=device.read_timeout_seconds + 5,
    )

    # 5. Dispatcher
    dispatcher = CommandDispatcher(
        adapter,
        quota,
        realtime_cache,
        intent_store,
        settings.control,
        read_timeout=device.read_timeout_seconds,
        write_timeout=device.write_timeout_seconds,
    )

    # 6-7. Orchestrator
    guard = RunGuard(store, ttl_seconds=settings.control.lease_ttl_seconds)
    orchestrator = Orchestrator(
        control=settings.control,
        price_settings=settings.price,
        price_feed=price_feed,
        classifier=PriceClassifier(),
        arbiter=arbiter,
        dispatcher=dispatcher,
        settings_store=settings_store,
        decision_log=decision_log,
        guard=guard,
        quota=quota,
    )
    await orchestrator.restore_state()

    # 8. Scheduler and simulated push channel
    scheduler = CycleScheduler(orchestrator, settings.control.cycle_interval_seconds)
    push_feed = SimulatedPushFeed(
        adapter.snapshot,
        realtime_cache,
        interval=device.push_interval_seconds,
        sink=status_store.save_status,
    )

    return {
        "database": database,
        "decision_log": decision_log,
        "status_store": status_store,
        "settings_store": settings_store,
        "intent_store": intent_store,
        "adapter": adapter,
        "quota": quota,
        "realtime_cache": realtime_cache,
        "orchestrator": orchestrator,
        "scheduler": scheduler,
        "push_feed": push_feed,
    }


def _setup_signal_handlers(
    scheduler: CycleScheduler, orchestrator: Orchestrator, stop_event: asyncio.Event
) -> None:
    """Register OS signal handlers for graceful and emergency shutdown.

    SIGINT/SIGTERM stop the scheduler and end the run.
    SIGUSR1 powers the pump off and halts automation.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("poolheat.main")
    loop = asyncio.get_running_loop()

    async def _graceful() -> None:
        await scheduler.stop()
        stop_event.set()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        asyncio.create_task(_graceful())

    def _emergency_handler() -> None:
        logger.critical("emergency_stop_signal_received")
        asyncio.create_task(orchestrator.emergency_shutdown("user_signal_SIGUSR1"))

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)

    loop.add_signal_handler(signal.SIGUSR1, _emergency_handler)


async def _shutdown(components: dict[str, Any]) -> None:
    await components["scheduler"].stop()
    await components["push_feed"].stop()
    if components["database"] is not None:
        await components["database"].close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage controller component lifecycle within the FastAPI application.

    On startup: stores components on app.state, starts the push feed and
    the scheduler. On shutdown: stops both and closes the database.
    """
    logger = get_logger("poolheat.main")
    settings: AppSettings = app.state.settings
    components = app.state.components

    app.state.orchestrator = components["orchestrator"]
    app.state.decision_log = components["decision_log"]
    app.state.settings_store = components["settings_store"]
    app.state.status_store = components["status_store"]
    app.state.intent_store = components["intent_store"]
    app.state.realtime_cache = components["realtime_cache"]
    app.state.device_id = settings.device.device_id

    # uvicorn handles SIGINT/SIGTERM itself; only the emergency signal is ours
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(
        signal.SIGUSR1,
        lambda: asyncio.create_task(
            components["orchestrator"].emergency_shutdown("user_signal_SIGUSR1")
        ),
    )

    await components["push_feed"].start()
    await components["scheduler"].start()
    logger.info("lifespan_started", device_id=settings.device.device_id)

    yield

    await _shutdown(components)
    logger.info("poolheat_stopped")


async def run() -> None:
    """Run the controller.

    With the control API enabled (DASHBOARD_ENABLED=true, the default) the
    scheduler runs inside the uvicorn server's lifespan. Otherwise it runs
    until SIGINT/SIGTERM.
    """
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("poolheat.main")

    components = await _build_components(settings)

    if settings.dashboard.enabled:
        from poolheat.dashboard.app import create_dashboard_app

        app = create_dashboard_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_control_api",
            host=settings.dashboard.host,
            port=settings.dashboard.port,
        )

        config = uvicorn.Config(
            app,
            host=settings.dashboard.host,
            port=settings.dashboard.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        stop_event = asyncio.Event()
        _setup_signal_handlers(components["scheduler"], components["orchestrator"], stop_event)
        logger.info("starting_without_control_api", interval=settings.control.cycle_interval_seconds)
        try:
            await components["push_feed"].start()
            await components["scheduler"].start()
            await stop_event.wait()
        finally:
            await _shutdown(components)
            logger.info("poolheat_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
