"""Data model: graph definitions, binding status, step and run records.

A graph definition is a JSON structure describing:
- Nodes (key, label, presentation metadata)
- Edges (source, target, optional route map for conditional transitions)

Definitions are written by the canvas editor and read by the compiler. The
compiler ignores presentation fields except for the two reserved keys that
mark the graph's entry and exit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

RESERVED_PREFIX = "__"


class ReservedMarker(str, Enum):
    """Reserved node keys marking the graph's entry and exit."""

    START = "__start__"
    END = "__end__"

    @classmethod
    def parse(cls, key: str) -> ReservedMarker | None:
        """Return the marker for ``key``, or None for an ordinary node key."""
        try:
            return cls(key)
        except ValueError:
            return None


def is_internal_key(key: str) -> bool:
    """Keys with the reserved prefix never bind to a registered node."""
    return key.startswith(RESERVED_PREFIX)


def _pick(d: dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    # Stored definitions come from the editor in camelCase; accept both.
    if snake in d:
        return d[snake]
    return d.get(camel, default)


# ---------------------------------------------------------------------------
# Graph definition
# ---------------------------------------------------------------------------


@dataclass
class GraphNodeDef:
    """A node in a graph definition."""

    key: str
    label: str = ""
    description: str | None = None
    icon: str | None = None
    has_prompt: bool = False
    position: dict[str, float] | None = None
    color: str | None = None
    node_type: str = "node"
    metadata: dict[str, Any] | None = None

    @property
    def marker(self) -> ReservedMarker | None:
        return ReservedMarker.parse(self.key)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "key": self.key,
            "label": self.label,
            "has_prompt": self.has_prompt,
            "node_type": self.node_type,
        }
        for name in ("description", "icon", "position", "color", "metadata"):
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        return d

    @staticmethod
    def from_dict(d: dict[str, Any]) -> GraphNodeDef:
        return GraphNodeDef(
            key=d["key"],
            label=d.get("label", d["key"]),
            description=d.get("description"),
            icon=d.get("icon"),
            has_prompt=bool(_pick(d, "has_prompt", "hasPrompt", False)),
            position=d.get("position"),
            color=d.get("color"),
            node_type=_pick(d, "node_type", "nodeType", "node"),
            metadata=d.get("metadata"),
        )


@dataclass
class GraphEdgeDef:
    """An edge in a graph definition. Conditional when it carries a route map."""

    source: str
    target: str
    route_map: dict[str, str] | None = None
    label: str | None = None
    source_handle: str | None = None
    target_handle: str | None = None

    @property
    def is_conditional(self) -> bool:
        return bool(self.route_map)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"source": self.source, "target": self.target}
        for name in ("route_map", "label", "source_handle", "target_handle"):
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        return d

    @staticmethod
    def from_dict(d: dict[str, Any]) -> GraphEdgeDef:
        route_map = _pick(d, "route_map", "routeMap")
        return GraphEdgeDef(
            source=d["source"],
            target=d["target"],
            route_map=dict(route_map) if route_map else None,
            label=d.get("label"),
            source_handle=_pick(d, "source_handle", "sourceHandle"),
            target_handle=_pick(d, "target_handle", "targetHandle"),
        )


@dataclass
class GraphDefinition:
    """Complete graph definition."""

    id: str
    slug: str
    name: str
    nodes: list[GraphNodeDef] = field(default_factory=list)
    edges: list[GraphEdgeDef] = field(default_factory=list)
    icon: str | None = None

    def node_keys(self) -> list[str]:
        return [n.key for n in self.nodes]

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }
        if self.icon is not None:
            d["icon"] = self.icon
        return d

    @staticmethod
    def from_dict(d: dict[str, Any]) -> GraphDefinition:
        return GraphDefinition(
            id=d.get("id", d["slug"]),
            slug=d["slug"],
            name=d.get("name", d["slug"]),
            nodes=[GraphNodeDef.from_dict(n) for n in d.get("nodes", [])],
            edges=[GraphEdgeDef.from_dict(e) for e in d.get("edges", [])],
            icon=d.get("icon"),
        )


@dataclass(frozen=True)
class BindingStatus:
    """Which definition nodes have an implementation (bound) and which don't (skeleton)."""

    bound: list[str]
    skeleton: list[str]

    @property
    def is_complete(self) -> bool:
        return not self.skeleton

    def to_dict(self) -> dict[str, list[str]]:
        return {"bound": list(self.bound), "skeleton": list(self.skeleton)}


@dataclass(frozen=True)
class CompiledGraph:
    """Compiler output: the invokable graph plus the binding diagnostics."""

    graph: Any
    binding_status: BindingStatus


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepData(BaseModel):
    """One recorded node invocation within a run."""

    agent_run_id: str
    node_id: str
    step_number: int
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0
    tokens_used: int | float = 0
    tool_name: str | None = None
    # Debug mode only
    state_before: dict[str, Any] | None = None
    state_after: dict[str, Any] | None = None


class RunRecord(BaseModel):
    """One execution of a compiled graph."""

    id: str
    graph_slug: str
    status: RunStatus = RunStatus.RUNNING
    input: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    tokens_used: int = 0
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None


class PromptVersion(BaseModel):
    """A versioned prompt template attached to a node."""

    id: str
    node_id: str
    version: int
    template: str
    temperature: float = 0.3
    is_active: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
