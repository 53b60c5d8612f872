"""
Shard Manager tests: routing, circuit breaking, fan-out and health checks.
"""

import socket
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import create_async_engine

from noor_index.config import Settings
from noor_index.shards.manager import (
    CircuitState,
    NoShardsConfiguredError,
    ShardConfig,
    ShardManager,
    ShardNotConfiguredError,
    ShardRole,
    ShardUnavailableError,
    is_connection_error,
    shard_configs_from_settings,
)

from conftest import sqlite_shard_configs


class UnreachableEngine:
    """Engine stand-in whose every connection attempt is refused."""

    dialect = SimpleNamespace(name="postgresql")

    def __init__(self):
        self.connect_attempts = 0

    def connect(self):
        self.connect_attempts += 1
        raise ConnectionRefusedError("connect ECONNREFUSED 127.0.0.1:5432")

    async def dispose(self):
        pass


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------

class TestShardConfiguration:
    """Tests for shard configuration and pool setup."""

    def test_no_shards_is_a_hard_error(self):
        """Verify initializing without shards fails."""
        with pytest.raises(NoShardsConfiguredError):
            ShardManager(configs=[]).initialize()

    def test_configs_from_settings(self):
        """Verify shard configs are read from settings."""
        cfg = Settings(
            shard_primary_url="postgresql+asyncpg://u:p@primary/db",
            shard_secondary2_url="postgresql+asyncpg://u:p@secondary2/db",
            shard_default_pool_size=7,
            shard_secondary2_pool_size=3,
            shard_max_size_bytes=1000,
            shard_2_max_size_bytes=500,
        )
        configs = shard_configs_from_settings(cfg)

        assert [c.id for c in configs] == [0, 2]
        assert configs[0].role is ShardRole.PRIMARY
        assert configs[1].role is ShardRole.SECONDARY
        assert configs[0].pool_size == 7
        assert configs[1].pool_size == 3
        assert configs[0].max_storage_bytes == 1000
        assert configs[1].max_storage_bytes == 500

    def test_initialize_builds_one_pool_per_shard(self):
        """Verify one engine is created per shard."""
        factory = MagicMock(return_value=SimpleNamespace(dialect=SimpleNamespace(name="postgresql")))
        configs = [
            ShardConfig(id=0, role=ShardRole.PRIMARY, url="postgresql+asyncpg://a/db", pool_size=4),
            ShardConfig(id=1, role=ShardRole.SECONDARY, url="postgresql+asyncpg://b/db"),
        ]
        manager = ShardManager(configs=configs, engine_factory=factory)
        manager.initialize()
        manager.initialize()

        assert factory.call_count == 2
        first = factory.call_args_list[0]
        assert first.args == ("postgresql+asyncpg://a/db",)
        assert first.kwargs["pool_size"] == 4
        assert first.kwargs["pool_pre_ping"] is True

    def test_unknown_shard_id(self, tmp_path):
        """Verify an unknown shard id raises ShardNotConfiguredError."""
        manager = ShardManager(configs=sqlite_shard_configs(tmp_path, 2))
        with pytest.raises(ShardNotConfiguredError):
            manager.get_config(5)


# ---------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------

class TestRouting:
    """Tests for deterministic document routing."""

    def test_routing_is_periodic_in_shard_count(self, tmp_path):
        """Verify routing repeats every shard-count ids."""
        manager = ShardManager(configs=sqlite_shard_configs(tmp_path, 3))
        n = len(manager.writable_shard_ids())
        for doc_id in range(0, 300):
            for k in range(0, 4):
                assert manager.route_document(doc_id) == manager.route_document(doc_id + k * n)

    def test_routing_spreads_over_all_writable_shards(self, tmp_path):
        """Verify routing uses every writable shard."""
        manager = ShardManager(configs=sqlite_shard_configs(tmp_path, 3))
        assert {manager.route_document(i) for i in range(30)} == {0, 1, 2}

    def test_retired_shard_never_receives_rows(self, tmp_path):
        """Verify the retired shard is never routed to."""
        manager = ShardManager(configs=sqlite_shard_configs(tmp_path, 3), retired_shard_id=0)
        assert manager.writable_shard_ids() == [1, 2]
        assert {manager.route_document(i) for i in range(100)} == {1, 2}
        assert manager.route_document(4) == 1
        assert manager.route_document(5) == 2

    def test_only_retired_shard_configured(self, tmp_path):
        """Verify routing fails when only the retired shard exists."""
        manager = ShardManager(configs=sqlite_shard_configs(tmp_path, 1), retired_shard_id=0)
        with pytest.raises(ShardUnavailableError):
            manager.route_document(1)

    def test_routing_ignores_circuit_state(self, tmp_path):
        """Verify an open circuit does not change routing."""
        manager = ShardManager(configs=sqlite_shard_configs(tmp_path, 3))
        before = [manager.route_document(i) for i in range(20)]
        manager._get_state(1).circuit = CircuitState.OPEN
        assert [manager.route_document(i) for i in range(20)] == before


# ---------------------------------------------------------------------
# Connection error classification
# ---------------------------------------------------------------------

class TestConnectionErrors:
    """Tests for classifying shard failures."""

    @pytest.mark.parametrize(
        "exc",
        [
            ConnectionRefusedError("refused"),
            socket.gaierror("getaddrinfo failed"),
            RuntimeError("terminating connection due to administrator command"),
            RuntimeError("Connection terminated unexpectedly"),
            OSError("connect ECONNREFUSED 10.0.0.1:5432"),
            RuntimeError("getaddrinfo ENOTFOUND db.example.com"),
        ],
    )
    def test_connection_class_errors(self, exc):
        """Verify connection failures are classified as such."""
        assert is_connection_error(exc)

    @pytest.mark.parametrize(
        "exc",
        [
            ValueError("invalid input syntax for type integer"),
            OperationalError("SELECT 1", {}, Exception("no such table: x")),
        ],
    )
    def test_statement_errors(self, exc):
        """Verify statement failures are not connection errors."""
        assert not is_connection_error(exc)


# ---------------------------------------------------------------------
# Execution, circuit breaker, health
# ---------------------------------------------------------------------

class TestExecution:
    """Tests for statement execution and fan-out."""

    async def test_execute_returns_mappings_and_records_metrics(self, make_shards):
        """Verify execute returns rows and records metrics."""
        manager = make_shards(2)
        rows = await manager.execute(0, "SELECT 1 AS one")

        assert rows[0]["one"] == 1
        metrics = manager.get_metrics(0)
        assert metrics.total_queries == 1
        assert metrics.last_error is None
        assert metrics.last_query_at is not None

    async def test_statement_error_does_not_open_circuit(self, make_shards):
        """Verify a statement error leaves the circuit closed."""
        manager = make_shards(2)
        with pytest.raises(OperationalError):
            await manager.execute(1, "SELECT * FROM missing_table")

        assert manager.is_active(1)
        assert manager.get_metrics(1).last_error is not None

    async def test_execute_on_all_active_fans_out(self, make_shards):
        """Verify fan-out reaches every active shard."""
        manager = make_shards(3)
        results = await manager.execute_on_all_active(
            lambda sid: ("SELECT :sid AS sid", {"sid": sid})
        )
        assert {sid: rows[0]["sid"] for sid, rows in results.items()} == {0: 0, 1: 1, 2: 2}

    async def test_execute_on_all_active_raises_first_error_after_all_finish(self, make_shards):
        """Verify fan-out finishes every shard before raising."""
        manager = make_shards(3)

        def factory(sid):
            if sid == 1:
                return ("SELECT * FROM missing_table", None)
            return ("SELECT 1", None)

        with pytest.raises(OperationalError):
            await manager.execute_on_all_active(factory)

        assert manager.get_metrics(0).total_queries == 1
        assert manager.get_metrics(2).total_queries == 1


class TestUnreachableShard:
    """A shard that refuses connections is isolated from the healthy ones."""

    @pytest.fixture
    async def manager(self, tmp_path):
        unreachable = UnreachableEngine()

        def factory(url, **kwargs):
            if "unreachable" in url:
                return unreachable
            return create_async_engine(url, **kwargs)

        configs = sqlite_shard_configs(tmp_path, 2) + [
            ShardConfig(id=2, role=ShardRole.SECONDARY, url="postgresql+asyncpg://unreachable/db")
        ]
        manager = ShardManager(configs=configs, engine_factory=factory)
        manager.initialize()
        manager.unreachable = unreachable
        yield manager
        await manager.shutdown()

    async def test_connection_refused_marks_shard_inactive(self, manager):
        """Verify a refused connection opens the circuit."""
        with pytest.raises(ConnectionRefusedError):
            await manager.execute(2, "SELECT 1")

        assert not manager.is_active(2)
        assert manager.active_shard_ids() == [0, 1]

    async def test_inactive_shard_is_skipped_without_connecting(self, manager):
        """Verify an open shard is skipped without connecting."""
        with pytest.raises(ConnectionRefusedError):
            await manager.execute(2, "SELECT 1")
        attempts = manager.unreachable.connect_attempts

        results = await manager.execute_on_all_active(lambda sid: ("SELECT 1 AS ok", None))
        assert sorted(results) == [0, 1]

        with pytest.raises(ShardUnavailableError):
            await manager.execute(2, "SELECT 1")

        health = await manager.health_check()
        by_id = {h.id: h for h in health}
        assert [h.id for h in health] == [0, 1, 2]
        assert by_id[0].active and by_id[1].active
        assert not by_id[2].active
        assert "ECONNREFUSED" in by_id[2].last_error
        assert manager.unreachable.connect_attempts == attempts

    async def test_health_check_probe_failure_opens_circuit(self, manager):
        """Verify a failing health probe marks the shard inactive."""
        health = await manager.health_check(timeout_ms=1000)

        assert not {h.id: h for h in health}[2].active
        assert not manager.is_active(2)

    async def test_reset_circuit_reenables_shard(self, manager):
        """Verify resetting the circuit re-enables the shard."""
        with pytest.raises(ConnectionRefusedError):
            await manager.execute(2, "SELECT 1")

        manager.reset_circuit(2)
        assert manager.is_active(2)

        with pytest.raises(ConnectionRefusedError):
            await manager.execute(2, "SELECT 1")
        assert manager.unreachable.connect_attempts == 2
