"""
phasegate — persistence

File: src/phasegate/persistence/__init__.py
Last updated: 2026-10-18

Purpose
- Persistence layer: state DB access, migrations, run stores.

Functional requirements
- Must support safe resume after crash and concurrent readers.

Non-functional requirements
- SQLite-first; avoid heavy DB dependencies.
"""

from phasegate.persistence.repositories import (
    InMemoryRunStore,
    RunStore,
    RunSummary,
    SqliteRunStore,
)
from phasegate.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "InMemoryRunStore",
    "RunStore",
    "RunSummary",
    "SqliteRunStore",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
