"""Storage interfaces consumed by the runtime.

The runtime never talks to a database directly. Host applications pass in
objects satisfying these protocols; linforge.storage ships in-memory and
Postgres implementations.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from linforge.core.types import GraphDefinition, PromptVersion, RunRecord, RunStatus, StepData


@runtime_checkable
class StepPersister(Protocol):
    """Write and read step records. Writes are never awaited by node execution."""

    async def create_step(self, data: StepData) -> None:
        ...

    async def get_steps(self, run_id: str) -> list[StepData]:
        ...


@runtime_checkable
class RunStore(Protocol):
    """Persist run records and their status transitions."""

    async def create_run(self, run: RunRecord) -> None:
        ...

    async def get_run(self, run_id: str) -> RunRecord | None:
        ...

    async def list_runs(
        self,
        graph_slug: str,
        *,
        limit: int = 20,
        offset: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> list[RunRecord]:
        ...

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        data: dict[str, Any] | None = None,
    ) -> None:
        ...


@runtime_checkable
class GraphStore(Protocol):
    """Persist graph definitions keyed by slug."""

    async def get_graph(self, slug: str) -> GraphDefinition | None:
        ...

    async def save_graph(self, graph: GraphDefinition) -> None:
        ...

    async def list_graphs(self) -> list[GraphDefinition]:
        ...


@runtime_checkable
class PromptStore(Protocol):
    """Versioned prompt templates per node. One active version per node."""

    async def get_active_prompt(self, node_id: str) -> PromptVersion | None:
        ...

    async def list_versions(self, node_id: str) -> list[PromptVersion]:
        ...

    async def create_version(
        self,
        node_id: str,
        template: str,
        temperature: float = 0.3,
    ) -> PromptVersion:
        ...

    async def activate_version(self, node_id: str, version_id: str) -> None:
        ...
