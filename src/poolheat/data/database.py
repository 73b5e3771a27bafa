"""Async SQLite database manager for controller state.

Uses aiosqlite for non-blocking database operations with WAL mode so the
control API can read the decision log while a cycle writes to it.
"""

import os
from typing import Self

import aiosqlite

from poolheat.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS decision_log (
    id TEXT PRIMARY KEY,
    timestamp REAL NOT NULL,
    price TEXT,
    classification TEXT NOT NULL,
    previous_setpoint TEXT,
    proposed_setpoint TEXT,
    applied_setpoint TEXT,
    reason TEXT NOT NULL,
    outcome TEXT NOT NULL,
    command TEXT NOT NULL,
    emergency INTEGER NOT NULL DEFAULT 0,
    status_source TEXT,
    cycle_state TEXT NOT NULL,
    confirmation_pending INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS device_status (
    device_id TEXT PRIMARY KEY,
    setpoint TEXT,
    measured_temp TEXT,
    power_state TEXT NOT NULL,
    online INTEGER NOT NULL,
    source_kind TEXT NOT NULL,
    observed_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS automation_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    payload TEXT NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS command_intents (
    id TEXT PRIMARY KEY,
    device_id TEXT NOT NULL,
    command TEXT NOT NULL,
    value TEXT,
    created_at REAL NOT NULL,
    status TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS price_points (
    zone TEXT NOT NULL,
    start_ts INTEGER NOT NULL,
    end_ts INTEGER NOT NULL,
    value TEXT NOT NULL,
    currency TEXT NOT NULL,
    PRIMARY KEY (zone, start_ts)
);

CREATE TABLE IF NOT EXISTS run_lease (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_decision_log_ts
    ON decision_log(timestamp);

CREATE INDEX IF NOT EXISTS idx_intents_device_status
    ON command_intents(device_id, status);
"""


class ControllerDatabase:
    """Owns the aiosqlite connection for the controller state file.

    The file may be opened by more than one process (the service and a
    cron-triggered cycle), so connections wait up to ``busy_timeout_ms`` for
    a competing writer instead of failing with "database is locked".

    Usage:
        async with ControllerDatabase("data/controller.db") as database:
            store = ControllerStore(database)
    """

    def __init__(self, db_path: str = "data/controller.db", busy_timeout_ms: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout_ms = busy_timeout_ms
        self._connection: aiosqlite.Connection | None = None

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def db(self) -> aiosqlite.Connection:
        """The open connection.

        Raises:
            RuntimeError: If connect() has not been called.
        """
        if self._connection is None:
            raise RuntimeError(f"controller database {self._db_path} is not connected")
        return self._connection

    async def connect(self) -> None:
        """Open the file (creating its directory), set pragmas, create the schema.

        Raises:
            RuntimeError: If the file was written by a newer schema version.
        """
        directory = os.path.dirname(self._db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        connection = await aiosqlite.connect(self._db_path)
        try:
            await connection.execute("PRAGMA journal_mode=WAL")
            await connection.execute("PRAGMA synchronous=NORMAL")
            await connection.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
            await connection.executescript(_CREATE_TABLES_SQL + _CREATE_INDEXES_SQL)
            await self._check_schema_version(connection)
            await connection.commit()
        except BaseException:
            await connection.close()
            raise

        self._connection = connection
        logger.info("controller_db_connected", db_path=self._db_path, schema_version=SCHEMA_VERSION)

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.info("controller_db_closed", db_path=self._db_path)

    async def _check_schema_version(self, connection: aiosqlite.Connection) -> None:
        cursor = await connection.execute("SELECT MAX(version) FROM schema_version")
        row = await cursor.fetchone()
        stored = row[0] if row is not None else None
        if stored is None:
            await connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
            logger.info("schema_version_set", version=SCHEMA_VERSION)
        elif stored > SCHEMA_VERSION:
            raise RuntimeError(
                f"{self._db_path} has schema version {stored}, "
                f"this controller supports up to {SCHEMA_VERSION}"
            )

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
