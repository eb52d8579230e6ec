"""Async PostgreSQL adapters for runs, steps, graph definitions and prompts.

Design principles
-----------------
- Protocol-based pool abstraction: production uses ``asyncpg``; tests
  substitute mock pools.
- JSON payloads (input, result, metadata, summaries, snapshots) are stored
  as JSONB and encoded with ``json.dumps(..., default=str)``.
- ``finished_at`` is written exactly when a run leaves ``running``.
- ``update_run_status`` merges its data into the existing ``result``.

Usage
-----
::

    backend = await PostgresBackend.from_dsn()
    await backend.schema.create_tables()
    manager.start_run(graph, run_id=..., graph_slug=..., input_state=...,
                      store=backend.runs)
    await backend.close()
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from linforge.config import get_settings
from linforge.core.types import (
    GraphDefinition,
    PromptVersion,
    RunRecord,
    RunStatus,
    StepData,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

_POOL_MIN_SIZE: int = 1
_POOL_MAX_SIZE: int = 10
_ACQUIRE_TIMEOUT_S: float = 30.0
_QUERY_TIMEOUT_S: float = 30.0


# ---------------------------------------------------------------------------
# Protocol: asyncpg-compatible connection / pool
# ---------------------------------------------------------------------------


@runtime_checkable
class ConnectionProto(Protocol):
    """Subset of asyncpg.Connection used by this module."""

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:
        ...

    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> list[Any]:
        ...

    async def fetchrow(self, query: str, *args: Any, timeout: float | None = None) -> Any | None:
        ...


@runtime_checkable
class PoolProto(Protocol):
    """Subset of asyncpg.Pool used by this module."""

    @asynccontextmanager
    def acquire(self) -> AsyncIterator[ConnectionProto]:  # type: ignore[empty-body]
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class PoolFactory(Protocol):
    """Factory that creates a PoolProto for a DSN."""

    async def create(
        self,
        dsn: str,
        *,
        min_size: int,
        max_size: int,
        timeout: float,
    ) -> PoolProto:
        ...


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

DDL_TABLES: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS linforge_runs (
        id            TEXT PRIMARY KEY,
        graph_slug    TEXT NOT NULL,
        status        TEXT NOT NULL DEFAULT 'running',
        input         JSONB,
        result        JSONB,
        metadata      JSONB,
        tokens_used   INT NOT NULL DEFAULT 0,
        started_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        finished_at   TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS linforge_steps (
        id            BIGSERIAL PRIMARY KEY,
        agent_run_id  TEXT NOT NULL,
        node_id       TEXT NOT NULL,
        step_number   INT NOT NULL,
        input         JSONB NOT NULL DEFAULT '{}'::JSONB,
        output        JSONB NOT NULL DEFAULT '{}'::JSONB,
        duration_ms   INT NOT NULL DEFAULT 0,
        tokens_used   DOUBLE PRECISION NOT NULL DEFAULT 0,
        tool_name     TEXT,
        state_before  JSONB,
        state_after   JSONB,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS linforge_graphs (
        slug          TEXT PRIMARY KEY,
        id            TEXT NOT NULL,
        name          TEXT NOT NULL,
        definition    JSONB NOT NULL,
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS linforge_prompts (
        id            TEXT PRIMARY KEY,
        node_id       TEXT NOT NULL,
        version       INT NOT NULL,
        template      TEXT NOT NULL,
        temperature   DOUBLE PRECISION NOT NULL DEFAULT 0.3,
        is_active     BOOLEAN NOT NULL DEFAULT FALSE,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (node_id, version)
    )
    """,
)

DDL_INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_linforge_runs_slug ON linforge_runs (graph_slug, started_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_linforge_steps_run ON linforge_steps (agent_run_id, step_number)",
    "CREATE INDEX IF NOT EXISTS idx_linforge_prompts_node ON linforge_prompts (node_id, version DESC)",
)


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _loads(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class SchemaManager:
    """Creates the linforge tables and indexes."""

    __slots__ = ("_pool",)

    def __init__(self, pool: PoolProto) -> None:
        self._pool = pool

    async def create_tables(self) -> None:
        async with self._pool.acquire() as conn:
            for ddl in DDL_TABLES:
                await conn.execute(ddl, timeout=_QUERY_TIMEOUT_S)
            for ddl in DDL_INDEXES:
                await conn.execute(ddl, timeout=_QUERY_TIMEOUT_S)
        logger.info("Linforge tables initialized")


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def _row_to_run(row: Any) -> RunRecord:
    d = dict(row)
    return RunRecord(
        id=d["id"],
        graph_slug=d["graph_slug"],
        status=RunStatus(d["status"]),
        input=_loads(d.get("input")),
        result=_loads(d.get("result")),
        metadata=_loads(d.get("metadata")),
        tokens_used=d.get("tokens_used") or 0,
        started_at=d["started_at"],
        finished_at=d.get("finished_at"),
    )


class PostgresRunStore:
    """RunStore over the ``linforge_runs`` table."""

    __slots__ = ("_pool",)

    def __init__(self, pool: PoolProto) -> None:
        self._pool = pool

    async def create_run(self, run: RunRecord) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO linforge_runs (id, graph_slug, status, input,
                                           metadata, tokens_used, started_at)
                VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $7)
                """,
                run.id,
                run.graph_slug,
                RunStatus(run.status).value,
                _dumps(run.input),
                _dumps(run.metadata),
                run.tokens_used,
                run.started_at,
                timeout=_QUERY_TIMEOUT_S,
            )

    async def get_run(self, run_id: str) -> RunRecord | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM linforge_runs WHERE id = $1",
                run_id,
                timeout=_QUERY_TIMEOUT_S,
            )
        if row is None:
            return None
        return _row_to_run(row)

    async def list_runs(
        self,
        graph_slug: str,
        *,
        limit: int = 20,
        offset: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> list[RunRecord]:
        """Newest first; ``metadata`` filters with JSONB containment."""
        async with self._pool.acquire() as conn:
            if metadata:
                rows = await conn.fetch(
                    """
                    SELECT * FROM linforge_runs
                    WHERE graph_slug = $1 AND metadata @> $2::jsonb
                    ORDER BY started_at DESC LIMIT $3 OFFSET $4
                    """,
                    graph_slug,
                    _dumps(metadata),
                    limit,
                    offset,
                    timeout=_QUERY_TIMEOUT_S,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM linforge_runs
                    WHERE graph_slug = $1
                    ORDER BY started_at DESC LIMIT $2 OFFSET $3
                    """,
                    graph_slug,
                    limit,
                    offset,
                    timeout=_QUERY_TIMEOUT_S,
                )
        return [_row_to_run(r) for r in rows]

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        data: dict[str, Any] | None = None,
    ) -> None:
        status = RunStatus(status)
        finished_at = datetime.now(timezone.utc) if status != RunStatus.RUNNING else None
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE linforge_runs
                SET status = $1,
                    result = CASE WHEN $2::jsonb IS NULL THEN result
                                  ELSE COALESCE(result, '{}'::jsonb) || $2::jsonb END,
                    finished_at = $3
                WHERE id = $4
                """,
                status.value,
                _dumps(data) if data else None,
                finished_at,
                run_id,
                timeout=_QUERY_TIMEOUT_S,
            )


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class PostgresStepPersister:
    """StepPersister over the ``linforge_steps`` table."""

    __slots__ = ("_pool",)

    def __init__(self, pool: PoolProto) -> None:
        self._pool = pool

    async def create_step(self, data: StepData) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO linforge_steps (
                    agent_run_id, node_id, step_number, input, output,
                    duration_ms, tokens_used, tool_name, state_before, state_after
                ) VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $7, $8, $9::jsonb, $10::jsonb)
                """,
                data.agent_run_id,
                data.node_id,
                data.step_number,
                _dumps(data.input),
                _dumps(data.output),
                data.duration_ms,
                data.tokens_used,
                data.tool_name,
                _dumps(data.state_before),
                _dumps(data.state_after),
                timeout=_QUERY_TIMEOUT_S,
            )

    async def get_steps(self, run_id: str) -> list[StepData]:
        """Steps ordered by step number; arrival order is not meaningful."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM linforge_steps WHERE agent_run_id = $1 ORDER BY step_number, id",
                run_id,
                timeout=_QUERY_TIMEOUT_S,
            )
        steps = []
        for row in rows:
            d = dict(row)
            steps.append(
                StepData(
                    agent_run_id=d["agent_run_id"],
                    node_id=d["node_id"],
                    step_number=d["step_number"],
                    input=_loads(d.get("input")) or {},
                    output=_loads(d.get("output")) or {},
                    duration_ms=d.get("duration_ms") or 0,
                    tokens_used=d.get("tokens_used") or 0,
                    tool_name=d.get("tool_name"),
                    state_before=_loads(d.get("state_before")),
                    state_after=_loads(d.get("state_after")),
                )
            )
        return steps


# ---------------------------------------------------------------------------
# Graphs
# ---------------------------------------------------------------------------


class PostgresGraphStore:
    """GraphStore over the ``linforge_graphs`` table; definitions stored as JSONB."""

    __slots__ = ("_pool",)

    def __init__(self, pool: PoolProto) -> None:
        self._pool = pool

    async def get_graph(self, slug: str) -> GraphDefinition | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT definition FROM linforge_graphs WHERE slug = $1",
                slug,
                timeout=_QUERY_TIMEOUT_S,
            )
        if row is None:
            return None
        return GraphDefinition.from_dict(_loads(dict(row)["definition"]))

    async def save_graph(self, graph: GraphDefinition) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO linforge_graphs (slug, id, name, definition, updated_at)
                VALUES ($1, $2, $3, $4::jsonb, NOW())
                ON CONFLICT (slug) DO UPDATE
                SET id = EXCLUDED.id,
                    name = EXCLUDED.name,
                    definition = EXCLUDED.definition,
                    updated_at = NOW()
                """,
                graph.slug,
                graph.id,
                graph.name,
                _dumps(graph.to_dict()),
                timeout=_QUERY_TIMEOUT_S,
            )

    async def list_graphs(self) -> list[GraphDefinition]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT definition FROM linforge_graphs ORDER BY name, slug",
                timeout=_QUERY_TIMEOUT_S,
            )
        return [GraphDefinition.from_dict(_loads(dict(r)["definition"])) for r in rows]


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def _row_to_prompt(row: Any) -> PromptVersion:
    d = dict(row)
    return PromptVersion(
        id=d["id"],
        node_id=d["node_id"],
        version=d["version"],
        template=d["template"],
        temperature=d["temperature"],
        is_active=d["is_active"],
        created_at=d["created_at"],
    )


class PostgresPromptStore:
    """PromptStore over the ``linforge_prompts`` table.

    Version numbers are allocated and activation is switched in single
    statements, so concurrent writers never see two active versions.
    """

    __slots__ = ("_pool",)

    def __init__(self, pool: PoolProto) -> None:
        self._pool = pool

    async def get_active_prompt(self, node_id: str) -> PromptVersion | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM linforge_prompts WHERE node_id = $1 AND is_active",
                node_id,
                timeout=_QUERY_TIMEOUT_S,
            )
        if row is None:
            return None
        return _row_to_prompt(row)

    async def list_versions(self, node_id: str) -> list[PromptVersion]:
        """Newest version first."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM linforge_prompts WHERE node_id = $1 ORDER BY version DESC",
                node_id,
                timeout=_QUERY_TIMEOUT_S,
            )
        return [_row_to_prompt(r) for r in rows]

    async def create_version(
        self,
        node_id: str,
        template: str,
        temperature: float = 0.3,
    ) -> PromptVersion:
        """Add an inactive version numbered one past the current highest."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                WITH next AS (
                    SELECT COALESCE(MAX(version), 0) + 1 AS v
                    FROM linforge_prompts WHERE node_id = $1
                )
                INSERT INTO linforge_prompts (id, node_id, version, template, temperature, is_active)
                SELECT 'prompt_' || $1 || '_v' || next.v, $1, next.v, $2, $3, FALSE
                FROM next
                RETURNING *
                """,
                node_id,
                template,
                temperature,
                timeout=_QUERY_TIMEOUT_S,
            )
        return _row_to_prompt(row)

    async def activate_version(self, node_id: str, version_id: str) -> None:
        """Make ``version_id`` the only active version. Raises KeyError if it does not exist."""
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE linforge_prompts SET is_active = (id = $2)
                WHERE node_id = $1
                  AND EXISTS (SELECT 1 FROM linforge_prompts WHERE node_id = $1 AND id = $2)
                """,
                node_id,
                version_id,
                timeout=_QUERY_TIMEOUT_S,
            )
        if status == "UPDATE 0":
            raise KeyError(f"prompt version {version_id!r} not found for node {node_id!r}")


# ---------------------------------------------------------------------------
# High-level backend
# ---------------------------------------------------------------------------


class PostgresBackend:
    """Facade exposing every store plus ``schema`` over one pool."""

    __slots__ = ("_pool", "graphs", "prompts", "runs", "schema", "steps")

    def __init__(self, pool: PoolProto) -> None:
        self._pool = pool
        self.runs = PostgresRunStore(pool)
        self.steps = PostgresStepPersister(pool)
        self.graphs = PostgresGraphStore(pool)
        self.prompts = PostgresPromptStore(pool)
        self.schema = SchemaManager(pool)

    async def close(self) -> None:
        await self._pool.close()

    @classmethod
    async def from_dsn(
        cls,
        dsn: str | None = None,
        *,
        pool_factory: PoolFactory | None = None,
    ) -> PostgresBackend:
        """Create a backend with a fresh pool. Uses asyncpg unless a factory is injected.

        The DSN defaults to LinforgeSettings.database_url.
        """
        dsn = dsn or get_settings().database_url
        if not dsn:
            raise ValueError("a Postgres DSN is required (set LINFORGE_DATABASE_URL)")
        if pool_factory is None:
            import asyncpg  # deferred import

            class _AsyncpgFactory:
                async def create(
                    self,
                    dsn: str,
                    *,
                    min_size: int,
                    max_size: int,
                    timeout: float,
                ) -> PoolProto:
                    return await asyncpg.create_pool(  # type: ignore[return-value]
                        dsn,
                        min_size=min_size,
                        max_size=max_size,
                        timeout=timeout,
                    )

            pool_factory = _AsyncpgFactory()

        pool = await pool_factory.create(
            dsn,
            min_size=_POOL_MIN_SIZE,
            max_size=_POOL_MAX_SIZE,
            timeout=_ACQUIRE_TIMEOUT_S,
        )
        logger.info("Postgres backend connected")
        return cls(pool)
