"""
Repository implementations for rolloutguard.

- **Flag persistence**: the single migration flag record
- **Data path storage**: read-only access to legacy and migrated tables
  for health probes

Each repository type provides:
- A Protocol (interface) defining the contract
- A SQLAlchemy implementation for PostgreSQL or SQLite
- An in-memory implementation for testing
"""

from rolloutguard.repositories._connection import execute_with_connection
from rolloutguard.repositories.flags import (
    DEFAULT_FLAG_KEY,
    FlagRepository,
    InMemoryFlagRepository,
    SQLAlchemyFlagRepository,
)
from rolloutguard.repositories.storage import (
    DataPathStorage,
    DataPathTables,
    InMemoryDataPathStorage,
    Row,
    SQLAlchemyDataPathStorage,
)

__all__ = [
    "execute_with_connection",
    # Flags
    "DEFAULT_FLAG_KEY",
    "FlagRepository",
    "InMemoryFlagRepository",
    "SQLAlchemyFlagRepository",
    # Storage
    "DataPathStorage",
    "DataPathTables",
    "InMemoryDataPathStorage",
    "Row",
    "SQLAlchemyDataPathStorage",
]
