"""Storage collaborator interfaces plus in-memory implementations.

The control loop depends only on these ABCs. ControllerStore (SQLite)
implements all of them for production; the in-memory classes back tests and
database-less runs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace

from poolheat.models import (
    AutomationSettings,
    CommandIntent,
    DecisionOutcome,
    DecisionRecord,
    DeviceStatus,
)

#: Outcomes after which the device setpoint is considered changed.
CHANGE_OUTCOMES = (DecisionOutcome.APPLIED, DecisionOutcome.SKIPPED_RATE_LIMIT)


class DecisionLog(ABC):
    """Append-only audit log of DecisionRecords."""

    @abstractmethod
    async def append(self, record: DecisionRecord) -> None:
        """Persist one record. Failures are soft for the caller."""
        ...

    @abstractmethod
    async def recent(self, limit: int = 50) -> list[DecisionRecord]:
        """Most recent records, newest first."""
        ...

    @abstractmethod
    async def last_setpoint_change(self, include_emergency: bool = True) -> DecisionRecord | None:
        """Newest record that changed the device setpoint, if any.

        With include_emergency=False only routine changes count; those are
        the ones the anti-short-cycle timer runs from.
        """
        ...


class StatusStore(ABC):
    """Last-known device status (written by the push ingestion path)."""

    @abstractmethod
    async def save_status(self, status: DeviceStatus) -> None: ...

    @abstractmethod
    async def latest_status(self, device_id: str) -> DeviceStatus | None: ...


class SettingsStore(ABC):
    """Operator-owned AutomationSettings, handed out by value per cycle."""

    @abstractmethod
    async def load(self) -> AutomationSettings: ...

    @abstractmethod
    async def save(self, settings: AutomationSettings) -> None: ...


class IntentStore(ABC):
    """Routine commands deferred for lack of call budget."""

    @abstractmethod
    async def record_intent(self, intent: CommandIntent) -> None:
        """Store an intent, superseding older pending intents for the device."""
        ...

    @abstractmethod
    async def pending_intents(self, device_id: str) -> list[CommandIntent]: ...

    @abstractmethod
    async def complete_intents(self, device_id: str) -> int:
        """Mark all pending intents of a device completed; returns how many."""
        ...


def is_setpoint_change(record: DecisionRecord) -> bool:
    """Whether a logged record moved the device setpoint."""
    return (
        record.outcome in CHANGE_OUTCOMES
        and record.applied_setpoint is not None
        and record.applied_setpoint != record.previous_setpoint
    )


def is_routine_change(record: DecisionRecord) -> bool:
    """Whether a logged record moved the setpoint outside an emergency."""
    return is_setpoint_change(record) and not record.emergency


class InMemoryDecisionLog(DecisionLog):
    """Decision log held in a list."""

    def __init__(self) -> None:
        self.records: list[DecisionRecord] = []

    async def append(self, record: DecisionRecord) -> None:
        self.records.append(record)

    async def recent(self, limit: int = 50) -> list[DecisionRecord]:
        return list(reversed(self.records))[:limit]

    async def last_setpoint_change(self, include_emergency: bool = True) -> DecisionRecord | None:
        matches = is_setpoint_change if include_emergency else is_routine_change
        for record in reversed(self.records):
            if matches(record):
                return record
        return None


class InMemoryStatusStore(StatusStore):
    """Latest status per device in a dict."""

    def __init__(self) -> None:
        self._statuses: dict[str, DeviceStatus] = {}

    async def save_status(self, status: DeviceStatus) -> None:
        self._statuses[status.device_id] = replace(status)

    async def latest_status(self, device_id: str) -> DeviceStatus | None:
        status = self._statuses.get(device_id)
        return replace(status) if status is not None else None


class StaticSettingsStore(SettingsStore):
    """Holds a single AutomationSettings value (frozen, so handed out safely)."""

    def __init__(self, settings: AutomationSettings | None = None) -> None:
        self._settings = settings or AutomationSettings()

    async def load(self) -> AutomationSettings:
        return self._settings

    async def save(self, settings: AutomationSettings) -> None:
        self._settings = settings


class InMemoryIntentStore(IntentStore):
    """Command intents in a list."""

    def __init__(self) -> None:
        self.intents: list[CommandIntent] = []

    async def record_intent(self, intent: CommandIntent) -> None:
        for existing in self.intents:
            if existing.device_id == intent.device_id and existing.status == "pending":
                existing.status = "superseded"
        self.intents.append(intent)

    async def pending_intents(self, device_id: str) -> list[CommandIntent]:
        return [i for i in self.intents if i.device_id == device_id and i.status == "pending"]

    async def complete_intents(self, device_id: str) -> int:
        count = 0
        for intent in self.intents:
            if intent.device_id == device_id and intent.status == "pending":
                intent.status = "completed"
                count += 1
        return count

