"""
Shared pytest fixtures for the outboxrelay tests.

This module provides:
- Configuration fixtures (config, make_config)
- In-memory backend fixtures (database, gateway, state_repo, sink)
- A relay harness wiring one RelayService over the in-memory backend
- SQLite fixtures (sqlite_connection, sqlite_state_repo)
- OpenTelemetry metrics fixtures (metric_reader)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterator
from dataclasses import dataclass
from typing import Any

import aiosqlite
import pytest
import pytest_asyncio
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

import outboxrelay.metrics as metrics_module
from outboxrelay.config import RelayConfig
from outboxrelay.models import CycleResult, MigrationPattern, TableCutoverState, TableRef
from outboxrelay.repositories import InMemoryCutoverStateRepository, SQLiteCutoverStateRepository
from outboxrelay.schema import get_statements
from outboxrelay.service import RelayService
from outboxrelay.sinks import InMemorySink
from outboxrelay.storage import InMemoryDatabase, InMemoryStorageGateway

NEW_ID_START = 1_000_000


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def make_config() -> Callable[..., RelayConfig]:
    """
    Factory for relay configurations with test-friendly timings.

    Example:
        def test_something(make_config):
            config = make_config(MigrationPattern.COP, batch_size=5)
    """

    def _make(pattern: MigrationPattern = MigrationPattern.HOP, **overrides: Any) -> RelayConfig:
        values: dict[str, Any] = {
            "pattern": pattern,
            "batch_size": 10,
            "max_retries": 3,
            "poll_interval": 0.01,
            "cycle_timeout": 5.0,
            "ddl_timeout": 5.0,
            "reconciliation_batch_size": 2,
            "initial_retry_delay": 0.01,
            "max_retry_delay": 0.05,
        }
        values.update(overrides)
        return RelayConfig(**values)

    return _make


@pytest.fixture
def config(make_config: Callable[..., RelayConfig]) -> RelayConfig:
    """HOP configuration with small batches."""
    return make_config()


# ============================================================================
# In-Memory Backend Fixtures
# ============================================================================


@pytest.fixture
def database(config: RelayConfig) -> InMemoryDatabase:
    """Old table plus partitioned new table with disjoint identifier spaces."""
    return InMemoryDatabase.from_config(config, new_id_start=NEW_ID_START)


@pytest.fixture
def gateway(database: InMemoryDatabase) -> InMemoryStorageGateway:
    return InMemoryStorageGateway(database, enable_tracing=False)


@pytest.fixture
def state_repo() -> InMemoryCutoverStateRepository:
    return InMemoryCutoverStateRepository(enable_tracing=False)


@pytest.fixture
def sink() -> InMemorySink:
    return InMemorySink(enable_tracing=False)


# ============================================================================
# Relay Harness
# ============================================================================


@dataclass
class RelayHarness:
    """One relay instance over a shared in-memory database."""

    config: RelayConfig
    database: InMemoryDatabase
    gateway: InMemoryStorageGateway
    repository: InMemoryCutoverStateRepository
    sink: InMemorySink
    service: RelayService

    @property
    def controller(self) -> Any:
        return self.service.controller

    @property
    def publisher(self) -> Any:
        return self.service.publisher

    async def insert(self, ref: TableRef, *payloads: str) -> list[int]:
        """Insert rows directly, bypassing writer checks."""
        table = self.config.table_name(ref)
        return [await self.gateway.insert(table, payload) for payload in payloads]

    async def cycle(self) -> CycleResult:
        return await self.publisher.run_cycle()

    async def drain(self, max_cycles: int = 50) -> list[CycleResult]:
        """Run cycles until one claims nothing."""
        results = []
        for _ in range(max_cycles):
            result = await self.cycle()
            results.append(result)
            if result.claimed == 0:
                break
        return results

    async def state(self) -> TableCutoverState:
        return await self.service.get_cutover_state()

    def spawn(self) -> RelayHarness:
        """Another relay instance sharing this one's database and control record."""
        sink = InMemorySink(enable_tracing=False)
        gateway = InMemoryStorageGateway(self.database, enable_tracing=False)
        return RelayHarness(
            config=self.config,
            database=self.database,
            gateway=gateway,
            repository=self.repository,
            sink=sink,
            service=RelayService(
                gateway,
                self.repository,
                sink,
                self.config,
                enable_metrics=False,
                enable_tracing=False,
            ),
        )


@pytest.fixture
def make_relay(make_config: Callable[..., RelayConfig]) -> Callable[..., RelayHarness]:
    """
    Factory for relay harnesses.

    Example:
        async def test_something(make_relay):
            relay = make_relay(MigrationPattern.HOPER)
            await relay.controller.initialize()
    """

    def _make(
        pattern: MigrationPattern = MigrationPattern.HOP,
        *,
        old_id_start: int = 1,
        new_id_start: int = NEW_ID_START,
        **overrides: Any,
    ) -> RelayHarness:
        config = make_config(pattern, **overrides)
        database = InMemoryDatabase.from_config(
            config,
            old_id_start=old_id_start,
            new_id_start=new_id_start,
        )
        gateway = InMemoryStorageGateway(database, enable_tracing=False)
        repository = InMemoryCutoverStateRepository(enable_tracing=False)
        sink = InMemorySink(enable_tracing=False)
        service = RelayService(
            gateway,
            repository,
            sink,
            config,
            enable_metrics=False,
            enable_tracing=False,
        )
        return RelayHarness(config, database, gateway, repository, sink, service)

    return _make


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[aiosqlite.Connection, None]:
    """
    Provide a raw aiosqlite connection to an in-memory database.

    The connection is automatically closed after the test.
    """
    conn = await aiosqlite.connect(":memory:")
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def sqlite_state_repo(
    sqlite_connection: aiosqlite.Connection,
) -> SQLiteCutoverStateRepository:
    """SQLite cutover state repository with its table created."""
    for statement in get_statements("cutover_state", "sqlite"):
        await sqlite_connection.execute(statement)
    await sqlite_connection.commit()
    return SQLiteCutoverStateRepository(sqlite_connection, enable_tracing=False)


# ============================================================================
# OpenTelemetry Metrics Fixtures
# ============================================================================


@pytest.fixture
def metric_reader() -> Iterator[InMemoryMetricReader]:
    """
    Provide an InMemoryMetricReader wired into the relay's meter.

    The relay caches its meter at module level; the cache is pointed at a
    meter of a private provider for the duration of the test.
    """
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    metrics_module.reset_meter()
    metrics_module._meter = provider.get_meter("outboxrelay")

    yield reader

    metrics_module.reset_meter()
    provider.shutdown()
