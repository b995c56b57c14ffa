"""
Storage gateways for outboxrelay.

- StorageGateway: Protocol the relay depends on
- PostgreSQLStorageGateway: Production backend (SQLAlchemy + asyncpg)
- InMemoryStorageGateway: Test backend emulating partitions, constraints
  and triggers
"""

from outboxrelay.storage.in_memory import InMemoryDatabase, InMemoryStorageGateway
from outboxrelay.storage.interface import (
    PUBLISHED_ONLY_EXPRESSION,
    StorageGateway,
    replication_trigger_name,
)
from outboxrelay.storage.postgresql import PostgreSQLStorageGateway

__all__ = [
    "PUBLISHED_ONLY_EXPRESSION",
    "StorageGateway",
    "replication_trigger_name",
    "InMemoryDatabase",
    "InMemoryStorageGateway",
    "PostgreSQLStorageGateway",
]
