"""
Shard Manager

This module abstracts N independently provisioned relational databases
("shards") behind one async API:

- One SQLAlchemy ``AsyncEngine`` (connection pool) per configured shard
- Deterministic document routing that skips a retired/full shard
- Per-shard latency and error metrics
- Per-shard circuit breaker: connection-class failures open the circuit and
  the shard is skipped by fan-out operations until an operator resets it

A failure on one shard never aborts work against the others.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from sqlalchemy import text
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.sql import Executable

from ..config import Settings, settings as default_settings

logger = logging.getLogger("noor.shards")

Statement = Union[str, Executable]
QueryFactory = Callable[[int], Tuple[Statement, Optional[Mapping[str, Any]]]]
EngineFactory = Callable[..., AsyncEngine]


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class ShardError(RuntimeError):
    """Base error for shard failures."""


class NoShardsConfiguredError(ShardError):
    """Raised when no shard connection string is configured."""


class ShardNotConfiguredError(ShardError):
    """Raised when an operation names a shard id that does not exist."""


class ShardUnavailableError(ShardError):
    """Raised when a shard's circuit is open or no writable shard remains."""


# ---------------------------------------------------------------------
# Shard State
# ---------------------------------------------------------------------

class ShardRole(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


@dataclass(frozen=True)
class ShardConfig:
    id: int
    role: ShardRole
    url: str
    pool_size: int = 10
    max_storage_bytes: Optional[int] = None


@dataclass
class ShardMetrics:
    total_queries: int = 0
    total_query_time_ms: float = 0.0
    last_query_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def avg_latency_ms(self) -> float:
        if self.total_queries == 0:
            return 0.0
        return self.total_query_time_ms / self.total_queries

    def record(self, elapsed_ms: float, error: Optional[str] = None) -> None:
        self.total_queries += 1
        self.total_query_time_ms += elapsed_ms
        self.last_query_at = datetime.now(timezone.utc)
        self.last_error = error


@dataclass
class ShardState:
    config: ShardConfig
    engine: AsyncEngine
    metrics: ShardMetrics = field(default_factory=ShardMetrics)
    circuit: CircuitState = CircuitState.CLOSED

    @property
    def active(self) -> bool:
        return self.circuit is CircuitState.CLOSED


@dataclass(frozen=True)
class ShardHealth:
    id: int
    role: ShardRole
    active: bool
    last_error: Optional[str]
    total_queries: int
    avg_latency_ms: float


# ---------------------------------------------------------------------
# Connection error classification
# ---------------------------------------------------------------------

_CONNECTION_ERROR_MARKERS = (
    "connection refused",
    "econnrefused",
    "enotfound",
    "could not translate host name",
    "name or service not known",
    "nodename nor servname provided",
    "temporary failure in name resolution",
    "terminating connection",
    "connection terminated unexpectedly",
    "connection was closed",
    "server closed the connection unexpectedly",
)


def is_connection_error(exc: BaseException) -> bool:
    """
    Return True for failures that mean the shard itself is unreachable
    (refused, host not found, connection terminated), as opposed to errors
    caused by the statement.
    """
    if isinstance(exc, (ConnectionError, socket.gaierror)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONNECTION_ERROR_MARKERS)


def shard_configs_from_settings(config: Optional[Settings] = None) -> List[ShardConfig]:
    """
    Build shard configs from ``SHARD_*`` environment settings.

    Shard 0 is the primary; 1 and 2 are secondaries. Unset URLs are skipped.
    """
    cfg = config or default_settings
    entries = [
        (0, ShardRole.PRIMARY, cfg.shard_primary_url, cfg.shard_primary_pool_size,
         cfg.shard_0_max_size_bytes),
        (1, ShardRole.SECONDARY, cfg.shard_secondary1_url, cfg.shard_secondary1_pool_size,
         cfg.shard_1_max_size_bytes),
        (2, ShardRole.SECONDARY, cfg.shard_secondary2_url, cfg.shard_secondary2_pool_size,
         cfg.shard_2_max_size_bytes),
    ]

    configs: List[ShardConfig] = []
    for shard_id, role, url, pool_size, max_bytes in entries:
        if not url:
            continue
        size = pool_size if pool_size and pool_size > 0 else cfg.shard_default_pool_size
        configs.append(
            ShardConfig(
                id=shard_id,
                role=role,
                url=url,
                pool_size=size,
                max_storage_bytes=max_bytes or cfg.shard_max_size_bytes,
            )
        )
    return configs


# ---------------------------------------------------------------------
# Shard Manager
# ---------------------------------------------------------------------

class ShardManager:
    """
    Owns one connection pool per shard and executes statements against them.

    Routing is a pure function of ``(doc_id, routing shard set)``: the
    configured shards minus the retired one, sorted by id. Retiring a shard
    or adding one changes every placement and requires an offline migration
    (see ``shards.migration``).
    """

    def __init__(
        self,
        configs: Optional[Sequence[ShardConfig]] = None,
        retired_shard_id: Optional[int] = None,
        engine_factory: EngineFactory = create_async_engine,
    ) -> None:
        self._configs: Optional[List[ShardConfig]] = (
            list(configs) if configs is not None else None
        )
        self._retired_shard_id = (
            retired_shard_id
            if retired_shard_id is not None
            else default_settings.shard_retired_id
        )
        self._engine_factory = engine_factory
        self._shards: Dict[int, ShardState] = {}
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, configs: Optional[Sequence[ShardConfig]] = None) -> None:
        """
        Build one pool per configured shard. Idempotent.

        Engines connect lazily, so this never touches the network.

        Raises
        ------
        NoShardsConfiguredError
            If zero shards are configured.
        """
        if self._initialized:
            return

        if configs is not None:
            self._configs = list(configs)
        if self._configs is None:
            self._configs = shard_configs_from_settings()

        if not self._configs:
            raise NoShardsConfiguredError(
                "No shard URLs configured. Set SHARD_PRIMARY_URL and optional secondary URLs."
            )

        for config in self._configs:
            engine = self._engine_factory(
                config.url,
                pool_size=config.pool_size,
                pool_pre_ping=True,
                pool_timeout=30,
            )
            self._shards[config.id] = ShardState(config=config, engine=engine)
            logger.info(
                "Configured shard %d (%s, pool_size=%d)",
                config.id,
                config.role.value,
                config.pool_size,
            )

        self._initialized = True

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self.initialize()

    async def shutdown(self) -> None:
        """Dispose every pool and forget all shard state."""
        await asyncio.gather(
            *(state.engine.dispose() for state in self._shards.values())
        )
        self._shards.clear()
        self._initialized = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def retired_shard_id(self) -> Optional[int]:
        return self._retired_shard_id

    def shard_ids(self) -> List[int]:
        self._ensure_initialized()
        return sorted(self._shards)

    def writable_shard_ids(self) -> List[int]:
        """Configured shards that may receive new rows, sorted by id."""
        self._ensure_initialized()
        return sorted(sid for sid in self._shards if sid != self._retired_shard_id)

    def active_shard_ids(self) -> List[int]:
        self._ensure_initialized()
        return sorted(sid for sid, state in self._shards.items() if state.active)

    def get_config(self, shard_id: int) -> ShardConfig:
        return self._get_state(shard_id).config

    def get_metrics(self, shard_id: int) -> ShardMetrics:
        return self._get_state(shard_id).metrics

    def is_active(self, shard_id: int) -> bool:
        return self._get_state(shard_id).active

    def dialect_name(self, shard_id: int) -> str:
        return self._get_state(shard_id).engine.dialect.name

    def _get_state(self, shard_id: int) -> ShardState:
        self._ensure_initialized()
        state = self._shards.get(shard_id)
        if state is None:
            raise ShardNotConfiguredError(f"Shard {shard_id} is not configured.")
        return state

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route_document(self, doc_id: int) -> int:
        """
        Return the shard that owns ``doc_id``.

        Raises
        ------
        ShardUnavailableError
            If the retired shard was the only one configured.
        """
        candidates = self.writable_shard_ids()
        if not candidates:
            raise ShardUnavailableError(
                f"No writable shards configured (shard {self._retired_shard_id} retired)."
            )
        return candidates[abs(doc_id) % len(candidates)]

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    def _trip(self, state: ShardState, reason: str) -> None:
        if state.circuit is CircuitState.OPEN:
            return
        state.circuit = CircuitState.OPEN
        logger.error(
            "Shard %d marked inactive due to connection error: %s",
            state.config.id,
            reason,
        )

    def reset_circuit(self, shard_id: int) -> None:
        """
        Close an open circuit so the shard is used again.

        Open circuits are never closed automatically.
        """
        state = self._get_state(shard_id)
        if state.circuit is CircuitState.OPEN:
            logger.warning("Shard %d circuit manually reset", shard_id)
        state.circuit = CircuitState.CLOSED

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        shard_id: int,
        statement: Statement,
        params: Optional[Mapping[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> List[RowMapping]:
        """
        Run one statement on one shard inside its own transaction.

        Parameters
        ----------
        shard_id : int
            Target shard.
        statement : str | Executable
            Raw SQL (bound with ``:name`` params) or a SQLAlchemy construct.
        params : Optional[Mapping[str, Any]]
            Bind parameters.
        timeout_ms : Optional[int]
            Statement timeout; applied with ``SET LOCAL statement_timeout``
            on PostgreSQL, enforced client-side elsewhere.

        Returns
        -------
        List[RowMapping]
            Result rows, or an empty list for statements returning none.

        Raises
        ------
        ShardUnavailableError
            If the shard's circuit is open.
        """
        state = self._get_state(shard_id)
        if not state.active:
            raise ShardUnavailableError(f"Shard {shard_id} is marked as inactive.")

        if isinstance(statement, str):
            statement = text(statement)

        started = time.perf_counter()
        try:
            run = self._run(state, statement, params, timeout_ms)
            if timeout_ms and timeout_ms > 0 and state.engine.dialect.name != "postgresql":
                rows = await asyncio.wait_for(run, timeout=timeout_ms / 1000.0)
            else:
                rows = await run
        except Exception as exc:
            state.metrics.record(
                (time.perf_counter() - started) * 1000.0,
                error=str(exc) or type(exc).__name__,
            )
            if is_connection_error(exc):
                self._trip(state, str(exc))
            raise

        state.metrics.record((time.perf_counter() - started) * 1000.0)
        return rows

    async def _run(
        self,
        state: ShardState,
        statement: Executable,
        params: Optional[Mapping[str, Any]],
        timeout_ms: Optional[int],
    ) -> List[RowMapping]:
        async with state.engine.connect() as conn:
            if timeout_ms and timeout_ms > 0 and conn.dialect.name == "postgresql":
                await conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))

            if params is None:
                result = await conn.execute(statement)
            else:
                result = await conn.execute(statement, dict(params))

            rows = list(result.mappings().all()) if result.returns_rows else []
            await conn.commit()
            return rows

    async def execute_on_all_active(
        self,
        query_factory: QueryFactory,
    ) -> Dict[int, List[RowMapping]]:
        """
        Fan a statement out concurrently to every shard with a closed circuit.

        Inactive shards are skipped silently. A failure on any shard is
        re-raised after all shards have finished.
        """
        shard_ids = self.active_shard_ids()

        async def _one(shard_id: int) -> Tuple[int, List[RowMapping]]:
            statement, params = query_factory(shard_id)
            return shard_id, await self.execute(shard_id, statement, params)

        outcomes = await asyncio.gather(
            *(_one(sid) for sid in shard_ids),
            return_exceptions=True,
        )

        results: Dict[int, List[RowMapping]] = {}
        first_error: Optional[BaseException] = None
        for shard_id, outcome in zip(shard_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Query failed on shard %d: %s", shard_id, outcome)
                first_error = first_error or outcome
                continue
            results[outcome[0]] = outcome[1]

        if first_error is not None:
            raise first_error
        return results

    async def gather_per_shard(
        self,
        shard_ids: Sequence[int],
        operation: Callable[[int], Awaitable[Any]],
    ) -> Tuple[Dict[int, Any], Dict[int, BaseException]]:
        """
        Run ``operation`` for each shard concurrently, collecting results and
        failures separately so one shard cannot abort the others.
        """
        outcomes = await asyncio.gather(
            *(operation(sid) for sid in shard_ids),
            return_exceptions=True,
        )
        results: Dict[int, Any] = {}
        errors: Dict[int, BaseException] = {}
        for shard_id, outcome in zip(shard_ids, outcomes):
            if isinstance(outcome, BaseException):
                errors[shard_id] = outcome
            else:
                results[shard_id] = outcome
        return results, errors

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self, timeout_ms: int = 5000) -> List[ShardHealth]:
        """
        Probe every shard concurrently with ``SELECT 1``.

        Shards whose circuit is already open are reported without a
        network call.
        """
        self._ensure_initialized()

        async def _probe(state: ShardState) -> ShardHealth:
            active = state.active
            error = state.metrics.last_error
            if active:
                try:
                    await self.execute(state.config.id, "SELECT 1", timeout_ms=timeout_ms)
                    error = state.metrics.last_error
                except Exception as exc:
                    active = False
                    error = str(exc) or type(exc).__name__

            return ShardHealth(
                id=state.config.id,
                role=state.config.role,
                active=active,
                last_error=error,
                total_queries=state.metrics.total_queries,
                avg_latency_ms=state.metrics.avg_latency_ms,
            )

        health = await asyncio.gather(*(_probe(s) for s in self._shards.values()))
        return sorted(health, key=lambda h: h.id)
