"""Typed SQLite read/write abstraction for controller state.

ControllerStore implements every storage collaborator the control loop
needs (decision log, last-known status, automation settings, command
intents) plus the price table read by StoredPriceFeed and the run lease used
by RunGuard. All SQL is isolated behind this interface.

CRITICAL: All prices and temperatures stored as TEXT in SQLite, restored as Decimal on read.
"""

import json
import time
from datetime import UTC, datetime
from decimal import Decimal

from poolheat.data.base import (
    CHANGE_OUTCOMES,
    DecisionLog,
    IntentStore,
    SettingsStore,
    StatusStore,
    is_setpoint_change,
)
from poolheat.data.database import ControllerDatabase
from poolheat.logging import get_logger
from poolheat.models import (
    AutomationSettings,
    CommandIntent,
    CommandKind,
    Currency,
    CycleState,
    DecisionOutcome,
    DecisionRecord,
    DeviceStatus,
    PowerState,
    PriceClassification,
    PricePoint,
    SourceKind,
    settings_from_dict,
    settings_to_dict,
)

logger = get_logger(__name__)

_DECISION_COLUMNS = (
    "id, timestamp, price, classification, previous_setpoint, proposed_setpoint, "
    "applied_setpoint, reason, outcome, command, emergency, status_source, "
    "cycle_state, confirmation_pending"
)


def _text(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _row_to_record(row: tuple) -> DecisionRecord:
    return DecisionRecord(
        id=row[0],
        timestamp=row[1],
        price=_dec(row[2]),
        classification=PriceClassification(row[3]),
        previous_setpoint=_dec(row[4]),
        proposed_setpoint=_dec(row[5]),
        applied_setpoint=_dec(row[6]),
        reason=row[7],
        outcome=DecisionOutcome(row[8]),
        command=CommandKind(row[9]),
        emergency=bool(row[10]),
        status_source=SourceKind(row[11]) if row[11] else None,
        cycle_state=CycleState(row[12]),
        confirmation_pending=bool(row[13]),
    )


class ControllerStore(DecisionLog, StatusStore, SettingsStore, IntentStore):
    """Async SQLite store for the controller's persistent state.

    Wraps ControllerDatabase with typed read/write methods.

    Args:
        database: Connected ControllerDatabase.
        defaults: Settings returned by load() until an operator saves some.

    Usage:
        async with ControllerDatabase("data/controller.db") as database:
            store = ControllerStore(database)
            await store.append(record)
    """

    def __init__(
        self,
        database: ControllerDatabase,
        defaults: AutomationSettings | None = None,
    ) -> None:
        self._database = database
        self._defaults = defaults or AutomationSettings()

    # ──────────────────────────────────────────────
    # Decision log
    # ──────────────────────────────────────────────

    async def append(self, record: DecisionRecord) -> None:
        """Insert one decision record (records are immutable; duplicates ignored)."""
        await self._database.db.execute(
            f"INSERT OR IGNORE INTO decision_log ({_DECISION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.timestamp,
                _text(record.price),
                record.classification.value,
                _text(record.previous_setpoint),
                _text(record.proposed_setpoint),
                _text(record.applied_setpoint),
                record.reason,
                record.outcome.value,
                record.command.value,
                1 if record.emergency else 0,
                record.status_source.value if record.status_source else None,
                record.cycle_state.value,
                1 if record.confirmation_pending else 0,
            ),
        )
        await self._database.db.commit()
        logger.debug("decision_logged", record_id=record.id, outcome=record.outcome.value)

    async def recent(self, limit: int = 50) -> list[DecisionRecord]:
        cursor = await self._database.db.execute(
            f"SELECT {_DECISION_COLUMNS} FROM decision_log "
            "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def last_setpoint_change(self, include_emergency: bool = True) -> DecisionRecord | None:
        placeholders = ", ".join("?" for _ in CHANGE_OUTCOMES)
        emergency_filter = "" if include_emergency else " AND emergency = 0"
        cursor = await self._database.db.execute(
            f"SELECT {_DECISION_COLUMNS} FROM decision_log "
            f"WHERE outcome IN ({placeholders}) AND applied_setpoint IS NOT NULL{emergency_filter} "
            "ORDER BY timestamp DESC, rowid DESC",
            [o.value for o in CHANGE_OUTCOMES],
        )
        async for row in cursor:
            record = _row_to_record(row)
            if is_setpoint_change(record):
                return record
        return None

    # ──────────────────────────────────────────────
    # Device status
    # ──────────────────────────────────────────────

    async def save_status(self, status: DeviceStatus) -> None:
        """Upsert the last-known status, keeping the newer observation."""
        await self._database.db.execute(
            "INSERT INTO device_status "
            "(device_id, setpoint, measured_temp, power_state, online, source_kind, observed_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(device_id) DO UPDATE SET "
            "setpoint = excluded.setpoint, measured_temp = excluded.measured_temp, "
            "power_state = excluded.power_state, online = excluded.online, "
            "source_kind = excluded.source_kind, observed_at = excluded.observed_at "
            "WHERE excluded.observed_at >= device_status.observed_at",
            (
                status.device_id,
                _text(status.setpoint),
                _text(status.measured_temp),
                status.power_state.value,
                1 if status.online else 0,
                status.source_kind.value,
                status.observed_at,
            ),
        )
        await self._database.db.commit()

    async def latest_status(self, device_id: str) -> DeviceStatus | None:
        cursor = await self._database.db.execute(
            "SELECT device_id, setpoint, measured_temp, power_state, online, source_kind, observed_at "
            "FROM device_status WHERE device_id = ?",
            (device_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return DeviceStatus(
            device_id=row[0],
            setpoint=_dec(row[1]),
            measured_temp=_dec(row[2]),
            power_state=PowerState(row[3]),
            online=bool(row[4]),
            source_kind=SourceKind(row[5]),
            observed_at=row[6],
        )

    # ──────────────────────────────────────────────
    # Automation settings
    # ──────────────────────────────────────────────

    async def load(self) -> AutomationSettings:
        cursor = await self._database.db.execute(
            "SELECT payload FROM automation_settings WHERE id = 1"
        )
        row = await cursor.fetchone()
        if row is None:
            return self._defaults
        return settings_from_dict(json.loads(row[0]))

    async def save(self, settings: AutomationSettings) -> None:
        await self._database.db.execute(
            "INSERT OR REPLACE INTO automation_settings (id, payload, updated_at) VALUES (1, ?, ?)",
            (json.dumps(settings_to_dict(settings)), time.time()),
        )
        await self._database.db.commit()
        logger.info("automation_settings_saved")

    # ──────────────────────────────────────────────
    # Command intents
    # ──────────────────────────────────────────────

    async def record_intent(self, intent: CommandIntent) -> None:
        db = self._database.db
        await db.execute(
            "UPDATE command_intents SET status = 'superseded' "
            "WHERE device_id = ? AND status = 'pending'",
            (intent.device_id,),
        )
        await db.execute(
            "INSERT INTO command_intents (id, device_id, command, value, created_at, status) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                intent.id,
                intent.device_id,
                intent.command.value,
                _text(intent.value),
                intent.created_at,
                intent.status,
            ),
        )
        await db.commit()

    async def pending_intents(self, device_id: str) -> list[CommandIntent]:
        cursor = await self._database.db.execute(
            "SELECT id, device_id, command, value, created_at, status FROM command_intents "
            "WHERE device_id = ? AND status = 'pending' ORDER BY created_at ASC",
            (device_id,),
        )
        rows = await cursor.fetchall()
        return [
            CommandIntent(
                id=row[0],
                device_id=row[1],
                command=CommandKind(row[2]),
                value=_dec(row[3]),
                created_at=row[4],
                status=row[5],
            )
            for row in rows
        ]

    async def complete_intents(self, device_id: str) -> int:
        cursor = await self._database.db.execute(
            "UPDATE command_intents SET status = 'completed' "
            "WHERE device_id = ? AND status = 'pending'",
            (device_id,),
        )
        await self._database.db.commit()
        return cursor.rowcount

    # ──────────────────────────────────────────────
    # Price points
    # ──────────────────────────────────────────────

    async def insert_price_points(self, zone: str, points: list[PricePoint]) -> int:
        """Insert price points, ignoring duplicates via INSERT OR IGNORE.

        Returns the number of actually inserted rows.
        """
        if not points:
            return 0
        data = [
            (zone, int(p.start.timestamp()), int(p.end.timestamp()), str(p.value), p.currency.value)
            for p in points
        ]
        cursor = await self._database.db.executemany(
            "INSERT OR IGNORE INTO price_points (zone, start_ts, end_ts, value, currency) "
            "VALUES (?, ?, ?, ?, ?)",
            data,
        )
        await self._database.db.commit()
        logger.debug("inserted_price_points", zone=zone, total=len(points), inserted=cursor.rowcount)
        return cursor.rowcount

    async def get_price_points(
        self, zone: str, start: datetime, end: datetime
    ) -> list[PricePoint]:
        """Points whose start lies in [start, end], ordered by start, in stored currency."""
        cursor = await self._database.db.execute(
            "SELECT start_ts, end_ts, value, currency FROM price_points "
            "WHERE zone = ? AND start_ts >= ? AND start_ts <= ? ORDER BY start_ts ASC",
            (zone, int(start.timestamp()), int(end.timestamp())),
        )
        rows = await cursor.fetchall()
        return [
            PricePoint(
                start=datetime.fromtimestamp(row[0], tz=UTC),
                end=datetime.fromtimestamp(row[1], tz=UTC),
                value=Decimal(row[2]),
                currency=Currency(row[3]),
            )
            for row in rows
        ]

    # ──────────────────────────────────────────────
    # Run lease
    # ──────────────────────────────────────────────

    async def acquire_lease(
        self, name: str, holder: str, ttl_seconds: float, now: float | None = None
    ) -> bool:
        """Take the named lease unless another holder owns an unexpired one."""
        now = now if now is not None else time.time()
        db = self._database.db
        await db.execute(
            "INSERT INTO run_lease (name, holder, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(name) DO UPDATE SET holder = excluded.holder, "
            "expires_at = excluded.expires_at "
            "WHERE run_lease.expires_at <= ? OR run_lease.holder = excluded.holder",
            (name, holder, now + ttl_seconds, now),
        )
        await db.commit()
        cursor = await db.execute("SELECT holder FROM run_lease WHERE name = ?", (name,))
        row = await cursor.fetchone()
        return row is not None and row[0] == holder

    async def release_lease(self, name: str, holder: str) -> None:
        await self._database.db.execute(
            "DELETE FROM run_lease WHERE name = ? AND holder = ?",
            (name, holder),
        )
        await self._database.db.commit()
