"""structlog setup for the controller.

Every event carries the logger name, level and an ISO timestamp. Events
emitted inside a control cycle also carry the cycle's ``cycle_id`` (bound
with cycle_context), so one grep reconstructs a whole decision.
"""

import logging
from contextlib import AbstractContextManager
from decimal import Decimal
from uuid import uuid4

import structlog

#: Third-party loggers that are chatty at DEBUG/INFO.
_QUIET_LOGGERS = ("aiosqlite", "uvicorn.access")


def _decimals_as_text(_logger, _method: str, event_dict: dict) -> dict:
    """Render Decimal values as plain strings ("28.5", not "Decimal('28.5')")."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Route structlog through stdlib logging with one stream handler.

    Args:
        log_level: Root level name (DEBUG, INFO, ...); unknown names mean INFO.
        log_format: "json" for machine-readable lines, anything else for the
            human-readable console renderer.
    """
    timestamper = structlog.processors.TimeStamper(fmt="iso")
    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        timestamper,
        _decimals_as_text,
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor
    if log_format.lower() == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            # stdlib records from uvicorn and friends get the same fields
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def cycle_context(cycle_id: str | None = None) -> AbstractContextManager:
    """Bind ``cycle_id`` to every event logged inside the block."""
    return structlog.contextvars.bound_contextvars(cycle_id=cycle_id or uuid4().hex[:12])


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)
