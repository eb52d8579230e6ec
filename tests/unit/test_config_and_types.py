"""Tests for settings and graph definition types."""

from __future__ import annotations

import pytest

from linforge.config import LinforgeSettings, get_settings, reset_settings
from linforge.core.exceptions import RunAbortedError
from linforge.core.types import (
    BindingStatus,
    GraphDefinition,
    GraphEdgeDef,
    GraphNodeDef,
    ReservedMarker,
    is_internal_key,
)


class TestSettings:
    def test_defaults(self):
        settings = LinforgeSettings()
        assert settings.run_timeout_ms == 300_000
        assert settings.run_id_key == "agent_run_id"
        assert settings.step_debug is False
        assert settings.max_snapshot_string_length == 5000

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("LINFORGE_RUN_TIMEOUT_MS", "1000")
        monkeypatch.setenv("LINFORGE_STEP_DEBUG", "true")
        reset_settings()
        settings = get_settings()
        assert settings.run_timeout_ms == 1000
        assert settings.step_debug is True

    def test_singleton(self):
        assert get_settings() is get_settings()
        first = get_settings()
        reset_settings()
        assert get_settings() is not first


class TestMarkers:
    def test_parse(self):
        assert ReservedMarker.parse("__start__") is ReservedMarker.START
        assert ReservedMarker.parse("__end__") is ReservedMarker.END
        assert ReservedMarker.parse("planner") is None

    @pytest.mark.parametrize(
        ("key", "expected"),
        [("__start__", True), ("__end__", True), ("__anything", True), ("planner", False), ("_x", False)],
    )
    def test_is_internal_key(self, key, expected):
        assert is_internal_key(key) is expected

    def test_node_marker_property(self):
        assert GraphNodeDef(key="__end__").marker is ReservedMarker.END
        assert GraphNodeDef(key="a").marker is None


class TestGraphDefinition:
    def test_from_dict_accepts_camel_case(self):
        graph = GraphDefinition.from_dict(
            {
                "id": "g1",
                "slug": "demo",
                "name": "Demo",
                "nodes": [{"key": "a", "hasPrompt": True, "nodeType": "llm", "position": {"x": 1, "y": 2}}],
                "edges": [{"source": "a", "target": "b", "routeMap": {"go": "b"}, "sourceHandle": "h"}],
            }
        )
        node = graph.nodes[0]
        assert node.label == "a"
        assert node.has_prompt is True
        assert node.node_type == "llm"
        assert node.position == {"x": 1, "y": 2}
        edge = graph.edges[0]
        assert edge.route_map == {"go": "b"}
        assert edge.is_conditional
        assert edge.source_handle == "h"

    def test_to_dict_round_trip(self):
        graph = GraphDefinition(
            id="g1",
            slug="demo",
            name="Demo",
            nodes=[GraphNodeDef(key="a", label="A", color="#fff")],
            edges=[GraphEdgeDef(source="a", target="__end__", label="done")],
            icon="bolt",
        )
        assert GraphDefinition.from_dict(graph.to_dict()) == graph

    def test_empty_route_map_is_direct(self):
        edge = GraphEdgeDef.from_dict({"source": "a", "target": "b", "route_map": {}})
        assert edge.route_map is None
        assert not edge.is_conditional

    def test_node_keys(self):
        graph = GraphDefinition(id="g", slug="g", name="g", nodes=[GraphNodeDef(key="a"), GraphNodeDef(key="b")])
        assert graph.node_keys() == ["a", "b"]


def test_binding_status_to_dict():
    status = BindingStatus(bound=["a"], skeleton=["b"])
    assert status.to_dict() == {"bound": ["a"], "skeleton": ["b"]}
    assert not status.is_complete


def test_run_aborted_error_message():
    err = RunAbortedError("r1", "timed out")
    assert err.run_id == "r1"
    assert err.reason == "timed out"
    assert "timed out" in str(err)
