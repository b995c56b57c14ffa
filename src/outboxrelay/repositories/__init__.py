"""
Repository implementations for outboxrelay.

- **Cutover state**: The per-migration control record driving the table
  cutover state machine

Each repository type provides:
- A Protocol (interface) defining the contract
- PostgreSQL implementation for production use
- SQLite implementation for lightweight deployments
- In-memory implementation for testing
"""

from outboxrelay.repositories.cutover_state import (
    DEFAULT_STATE_TABLE,
    CutoverStateRepository,
    InMemoryCutoverStateRepository,
    PostgreSQLCutoverStateRepository,
    SQLiteCutoverStateRepository,
)

__all__ = [
    "DEFAULT_STATE_TABLE",
    "CutoverStateRepository",
    "PostgreSQLCutoverStateRepository",
    "SQLiteCutoverStateRepository",
    "InMemoryCutoverStateRepository",
]
