"""In-memory store adapters for tests, examples and single-process hosts."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from linforge.core.types import (
    GraphDefinition,
    PromptVersion,
    RunRecord,
    RunStatus,
    StepData,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStepPersister:
    """Step records grouped by run id, in arrival order."""

    def __init__(self) -> None:
        self._steps: dict[str, list[StepData]] = {}

    async def create_step(self, data: StepData) -> None:
        self._steps.setdefault(data.agent_run_id, []).append(data)

    async def get_steps(self, run_id: str) -> list[StepData]:
        return list(self._steps.get(run_id, []))

    def clear(self) -> None:
        self._steps.clear()


class MemoryRunStore:
    """Run records keyed by id."""

    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}

    async def create_run(self, run: RunRecord) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run is not None else None

    async def list_runs(
        self,
        graph_slug: str,
        *,
        limit: int = 20,
        offset: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> list[RunRecord]:
        """Newest first. ``metadata`` keeps runs whose metadata contains every given pair."""
        matched = [r for r in self._runs.values() if r.graph_slug == graph_slug]
        if metadata:
            matched = [
                r for r in matched
                if all((r.metadata or {}).get(k) == v for k, v in metadata.items())
            ]
        matched.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in matched[offset:offset + limit]]

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        data: dict[str, Any] | None = None,
    ) -> None:
        status = RunStatus(status)
        finished_at = _utcnow() if status != RunStatus.RUNNING else None
        existing = self._runs.get(run_id)
        if existing is None:
            # Status updates without a prior create_run still produce a record.
            self._runs[run_id] = RunRecord(
                id=run_id,
                graph_slug="",
                status=status,
                result=dict(data) if data else None,
                finished_at=finished_at,
            )
            return

        existing.status = status
        if data:
            existing.result = {**(existing.result or {}), **data}
        existing.finished_at = finished_at

    def clear(self) -> None:
        self._runs.clear()


class MemoryGraphStore:
    """Graph definitions keyed by slug."""

    def __init__(self) -> None:
        self._graphs: dict[str, GraphDefinition] = {}

    async def get_graph(self, slug: str) -> GraphDefinition | None:
        return self._graphs.get(slug)

    async def save_graph(self, graph: GraphDefinition) -> None:
        self._graphs[graph.slug] = graph

    async def list_graphs(self) -> list[GraphDefinition]:
        return list(self._graphs.values())

    def set_graph(self, graph: GraphDefinition) -> None:
        self._graphs[graph.slug] = graph

    def clear(self) -> None:
        self._graphs.clear()


class MemoryPromptStore:
    """Prompt versions per node. Versions auto-increment; activation is exclusive per node."""

    def __init__(self) -> None:
        self._versions: dict[str, list[PromptVersion]] = {}

    async def get_active_prompt(self, node_id: str) -> PromptVersion | None:
        for version in self._versions.get(node_id, []):
            if version.is_active:
                return version
        return None

    async def list_versions(self, node_id: str) -> list[PromptVersion]:
        """Newest version first."""
        return sorted(self._versions.get(node_id, []), key=lambda v: v.version, reverse=True)

    async def create_version(
        self,
        node_id: str,
        template: str,
        temperature: float = 0.3,
    ) -> PromptVersion:
        """Add an inactive version numbered one past the current highest."""
        return self._append(node_id, template, temperature, active=False)

    async def activate_version(self, node_id: str, version_id: str) -> None:
        versions = self._versions.get(node_id)
        if not versions:
            raise KeyError(f"no prompt versions for node {node_id!r}")
        if not any(v.id == version_id for v in versions):
            raise KeyError(f"prompt version {version_id!r} not found for node {node_id!r}")
        for v in versions:
            v.is_active = v.id == version_id

    def set_prompt(self, node_id: str, template: str, temperature: float = 0.3) -> PromptVersion:
        """Add a new version and make it the active one."""
        for v in self._versions.get(node_id, []):
            v.is_active = False
        return self._append(node_id, template, temperature, active=True)

    def _append(self, node_id: str, template: str, temperature: float, *, active: bool) -> PromptVersion:
        versions = self._versions.setdefault(node_id, [])
        number = max((v.version for v in versions), default=0) + 1
        version = PromptVersion(
            id=f"prompt_{node_id}_v{number}",
            node_id=node_id,
            version=number,
            template=template,
            temperature=temperature,
            is_active=active,
        )
        versions.append(version)
        logger.debug("Created prompt version %s (active=%s)", version.id, active)
        return version

    def clear(self) -> None:
        self._versions.clear()
