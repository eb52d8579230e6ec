"""Shared test fixtures for linforge."""

from __future__ import annotations

from typing import TypedDict

import pytest

from linforge.config import reset_settings
from linforge.core.node_registry import NodeRegistry
from linforge.core.step_recorder import StepRecorder
from linforge.core.types import GraphDefinition
from linforge.storage.memory import MemoryRunStore, MemoryStepPersister


class CounterState(TypedDict, total=False):
    """Graph state used across compiler and run tests."""

    agent_run_id: str
    count: int
    result: str
    tokens_used: int
    iteration: int
    items: list[str]
    left: str
    right: str


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """Isolate tests from LINFORGE_* variables in the host environment."""
    for name in (
        "LINFORGE_RUN_TIMEOUT_MS",
        "LINFORGE_RUN_ID_KEY",
        "LINFORGE_STEP_DEBUG",
        "LINFORGE_DATABASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def recorder() -> StepRecorder:
    """A fresh recorder so step numbering never leaks between tests."""
    return StepRecorder()


@pytest.fixture
def registry() -> NodeRegistry:
    return NodeRegistry()


@pytest.fixture
def persister() -> MemoryStepPersister:
    return MemoryStepPersister()


@pytest.fixture
def run_store() -> MemoryRunStore:
    return MemoryRunStore()


def _make_graph(nodes: list[str], edges: list[dict], slug: str = "test-graph") -> GraphDefinition:
    return GraphDefinition.from_dict(
        {
            "id": f"g_{slug}",
            "slug": slug,
            "name": slug.replace("-", " ").title(),
            "nodes": [{"key": k, "label": k} for k in nodes],
            "edges": edges,
        }
    )


@pytest.fixture
def state_schema() -> type:
    return CounterState


@pytest.fixture
def make_graph():
    """Factory: ``make_graph(node_keys, edge_dicts, slug=...)`` -> GraphDefinition."""
    return _make_graph
