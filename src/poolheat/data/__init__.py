"""Controller persistence layer.

Storage collaborator interfaces with in-memory implementations, the SQLite
database manager, and the typed store implementing all of them.
"""

from poolheat.data.base import (
    DecisionLog,
    InMemoryDecisionLog,
    InMemoryIntentStore,
    InMemoryStatusStore,
    IntentStore,
    SettingsStore,
    StaticSettingsStore,
    StatusStore,
)
from poolheat.data.database import ControllerDatabase
from poolheat.data.store import ControllerStore

__all__ = [
    "ControllerDatabase",
    "ControllerStore",
    "DecisionLog",
    "InMemoryDecisionLog",
    "InMemoryIntentStore",
    "InMemoryStatusStore",
    "IntentStore",
    "SettingsStore",
    "StaticSettingsStore",
    "StatusStore",
]
