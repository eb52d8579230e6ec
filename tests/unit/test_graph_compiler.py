"""Tests for GraphCompiler against real LangGraph StateGraphs."""

from __future__ import annotations

import pytest
from langgraph.checkpoint.memory import MemorySaver
from langgraph.graph import END, START

from linforge.core.define_node import define_node
from linforge.core.exceptions import GraphCompileError, UnboundNodesError
from linforge.core.graph_compiler import (
    GraphCompiler,
    StepRecordingConfig,
    build_route_fn,
    group_edges_by_source,
    resolve_node_key,
)
from linforge.core.types import GraphEdgeDef


# =============================================================================
# Fixtures
# =============================================================================


async def _classify(state):
    return {"count": state.get("count", 0) + 1}


async def _high(state):
    return {"result": "high"}


async def _low(state):
    return {"result": "low"}


@pytest.fixture
def routing_registry(registry):
    registry.register_all(
        [
            define_node(
                "classify",
                _classify,
                routes={
                    "high": lambda s: s.get("count", 0) > 5,
                    "low": lambda s: s.get("count", 0) <= 5,
                },
            ),
            define_node("high_handler", _high),
            define_node("low_handler", _low),
        ]
    )
    return registry


@pytest.fixture
def routing_graph(make_graph):
    return make_graph(
        ["__start__", "classify", "high_handler", "low_handler", "__end__"],
        [
            {"source": "__start__", "target": "classify"},
            {
                "source": "classify",
                "target": "high_handler",
                "route_map": {"high": "high_handler", "low": "low_handler"},
            },
            {"source": "high_handler", "target": "__end__"},
            {"source": "low_handler", "target": "__end__"},
        ],
    )


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    def test_resolve_node_key(self):
        assert resolve_node_key("__start__") == START
        assert resolve_node_key("__end__") == END
        assert resolve_node_key("planner") == "planner"
        assert resolve_node_key("__other__") == "__other__"

    def test_group_edges_by_source(self):
        edges = [
            GraphEdgeDef(source="a", target="b"),
            GraphEdgeDef(source="b", target="c"),
            GraphEdgeDef(source="a", target="c"),
        ]
        groups = group_edges_by_source(edges)
        assert list(groups) == ["a", "b"]
        assert [e.target for e in groups["a"]] == ["b", "c"]

    def test_route_fn_first_match_in_key_order(self):
        route = build_route_fn(
            {"x": "nx", "y": "ny"},
            {"x": lambda s: s["v"] > 1, "y": lambda s: s["v"] > 0},
        )
        assert route({"v": 2}) == "x"
        assert route({"v": 1}) == "y"

    def test_route_fn_falls_back_to_first_key(self):
        route = build_route_fn({"x": "nx", "y": "ny"}, {"y": lambda s: False})
        assert route({}) == "x"


# =============================================================================
# Compilation
# =============================================================================


class TestCompile:
    def test_missing_state_schema(self, routing_registry, routing_graph):
        compiler = GraphCompiler(routing_registry)
        with pytest.raises(GraphCompileError, match="state_schema is required"):
            compiler.compile(state_schema=None, graph_def=routing_graph)

    def test_skeleton_nodes_abort(self, registry, make_graph, state_schema):
        registry.register(define_node("a", _classify))
        graph_def = make_graph(
            ["__start__", "a", "b", "c", "__end__"],
            [{"source": "__start__", "target": "a"}],
        )
        with pytest.raises(UnboundNodesError) as exc_info:
            GraphCompiler(registry).compile(state_schema=state_schema, graph_def=graph_def)
        assert exc_info.value.keys == ["b", "c"]
        assert "b, c" in str(exc_info.value)
        assert isinstance(exc_info.value, GraphCompileError)

    def test_binding_status_returned(self, routing_registry, routing_graph, state_schema):
        compiled = GraphCompiler(routing_registry).compile(
            state_schema=state_schema, graph_def=routing_graph
        )
        assert compiled.binding_status.bound == ["classify", "high_handler", "low_handler"]
        assert compiled.binding_status.skeleton == []
        assert hasattr(compiled.graph, "ainvoke")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("count", "expected"), [(10, "high"), (2, "low")])
    async def test_conditional_routing(
        self, routing_registry, routing_graph, state_schema, count, expected
    ):
        compiled = GraphCompiler(routing_registry).compile(
            state_schema=state_schema, graph_def=routing_graph
        )
        result = await compiled.graph.ainvoke({"count": count})
        assert result["count"] == count + 1
        assert result["result"] == expected

    @pytest.mark.asyncio
    async def test_route_map_without_routes_is_direct_edge(self, registry, make_graph, state_schema):
        registry.register_all([define_node("a", _classify), define_node("b", _high)])
        graph_def = make_graph(
            ["__start__", "a", "b", "__end__"],
            [
                {"source": "__start__", "target": "a"},
                {"source": "a", "target": "b", "route_map": {"go": "b"}},
                {"source": "b", "target": "__end__"},
            ],
        )
        compiled = GraphCompiler(registry).compile(state_schema=state_schema, graph_def=graph_def)
        result = await compiled.graph.ainvoke({"count": 0})
        assert result == {"count": 1, "result": "high"}

    @pytest.mark.asyncio
    async def test_route_fallback_when_no_predicate_matches(self, registry, make_graph, state_schema):
        registry.register_all(
            [
                define_node("a", _classify, routes={"never": lambda s: False}),
                define_node("b", _high),
                define_node("c", _low),
            ]
        )
        graph_def = make_graph(
            ["__start__", "a", "b", "c", "__end__"],
            [
                {"source": "__start__", "target": "a"},
                {"source": "a", "target": "b", "route_map": {"first": "c", "never": "b"}},
                {"source": "b", "target": "__end__"},
                {"source": "c", "target": "__end__"},
            ],
        )
        compiled = GraphCompiler(registry).compile(state_schema=state_schema, graph_def=graph_def)
        result = await compiled.graph.ainvoke({"count": 0})
        assert result["result"] == "low"

    @pytest.mark.asyncio
    async def test_route_to_end(self, registry, make_graph, state_schema):
        registry.register_all(
            [
                define_node(
                    "loop",
                    _classify,
                    routes={"again": lambda s: s["count"] < 3, "done": lambda s: True},
                )
            ]
        )
        graph_def = make_graph(
            ["__start__", "loop", "__end__"],
            [
                {"source": "__start__", "target": "loop"},
                {"source": "loop", "target": "loop", "route_map": {"again": "loop", "done": "__end__"}},
            ],
        )
        compiled = GraphCompiler(registry).compile(state_schema=state_schema, graph_def=graph_def)
        result = await compiled.graph.ainvoke({"count": 0})
        assert result["count"] == 3

    @pytest.mark.asyncio
    async def test_fan_out_direct_edges(self, registry, make_graph, state_schema):
        registry.register_all(
            [
                define_node("a", _classify),
                define_node("b", lambda s: {"left": "b"}),
                define_node("c", lambda s: {"right": "c"}),
            ]
        )
        graph_def = make_graph(
            ["__start__", "a", "b", "c", "__end__"],
            [
                {"source": "__start__", "target": "a"},
                {"source": "a", "target": "b"},
                {"source": "a", "target": "c"},
                {"source": "b", "target": "__end__"},
                {"source": "c", "target": "__end__"},
            ],
        )
        compiled = GraphCompiler(registry).compile(state_schema=state_schema, graph_def=graph_def)
        result = await compiled.graph.ainvoke({"count": 0})
        assert result == {"count": 1, "left": "b", "right": "c"}

    @pytest.mark.asyncio
    async def test_camel_case_definition(self, routing_registry, state_schema):
        from linforge.core.types import GraphDefinition

        graph_def = GraphDefinition.from_dict(
            {
                "slug": "camel",
                "nodes": [{"key": "__start__"}, {"key": "classify"}, {"key": "high_handler"},
                          {"key": "low_handler"}, {"key": "__end__"}],
                "edges": [
                    {"source": "__start__", "target": "classify"},
                    {"source": "classify", "target": "low_handler",
                     "routeMap": {"high": "high_handler", "low": "low_handler"}},
                    {"source": "high_handler", "target": "__end__"},
                    {"source": "low_handler", "target": "__end__"},
                ],
            }
        )
        compiled = GraphCompiler(routing_registry).compile(
            state_schema=state_schema, graph_def=graph_def
        )
        assert (await compiled.graph.ainvoke({"count": 9}))["result"] == "high"

    @pytest.mark.asyncio
    async def test_checkpointer_passed_through(self, routing_registry, routing_graph, state_schema):
        saver = MemorySaver()
        compiled = GraphCompiler(routing_registry).compile(
            state_schema=state_schema, graph_def=routing_graph, checkpointer=saver
        )
        assert compiled.graph.checkpointer is saver
        config = {"configurable": {"thread_id": "t1"}}
        await compiled.graph.ainvoke({"count": 1}, config=config)
        snapshot = await compiled.graph.aget_state(config)
        assert snapshot.values["result"] == "low"


# =============================================================================
# Step recording through the compiler
# =============================================================================


class TestCompiledStepRecording:
    @pytest.mark.asyncio
    async def test_steps_recorded_per_node(
        self, routing_registry, routing_graph, state_schema, recorder, persister
    ):
        compiled = GraphCompiler(routing_registry, recorder=recorder).compile(
            state_schema=state_schema,
            graph_def=routing_graph,
            step_recording=StepRecordingConfig(persister=persister),
        )
        await compiled.graph.ainvoke({"agent_run_id": "run-1", "count": 7})
        await recorder.drain()

        steps = await persister.get_steps("run-1")
        assert [(s.node_id, s.step_number) for s in steps] == [
            ("classify", 1),
            ("high_handler", 2),
        ]
        assert steps[0].output == {"count": 8}

    @pytest.mark.asyncio
    async def test_node_output_summarizer_used(
        self, registry, make_graph, state_schema, recorder, persister
    ):
        registry.register(
            define_node(
                "a",
                _high,
                summarize_output=lambda state, result: {"verdict": result["result"]},
            )
        )
        graph_def = make_graph(
            ["__start__", "a", "__end__"],
            [{"source": "__start__", "target": "a"}, {"source": "a", "target": "__end__"}],
        )
        compiled = GraphCompiler(registry, recorder=recorder).compile(
            state_schema=state_schema,
            graph_def=graph_def,
            step_recording=StepRecordingConfig(persister=persister, debug=True),
        )
        await compiled.graph.ainvoke({"agent_run_id": "run-2"})
        await recorder.drain()

        [step] = await persister.get_steps("run-2")
        assert step.output == {"verdict": "high"}
        assert step.state_after["result"] == "high"

    @pytest.mark.asyncio
    async def test_no_recording_without_run_id(
        self, routing_registry, routing_graph, state_schema, recorder, persister
    ):
        compiled = GraphCompiler(routing_registry, recorder=recorder).compile(
            state_schema=state_schema,
            graph_def=routing_graph,
            step_recording=StepRecordingConfig(persister=persister),
        )
        await compiled.graph.ainvoke({"count": 1})
        assert recorder.pending_count == 0
        assert len(recorder.counter) == 0


class TestStepRecordingConfig:
    def test_defaults_from_settings(self, monkeypatch, persister):
        from linforge.config import reset_settings

        monkeypatch.setenv("LINFORGE_STEP_DEBUG", "true")
        monkeypatch.setenv("LINFORGE_RUN_ID_KEY", "thread")
        reset_settings()
        opts = StepRecordingConfig(persister=persister).to_options()
        assert opts.debug is True
        assert opts.run_id_key == "thread"
        assert opts.max_snapshot_string_length == 5000

    def test_explicit_values_win(self, persister):
        summarize = lambda state, result: {}  # noqa: E731
        opts = StepRecordingConfig(
            persister=persister, run_id_key="rid", debug=False, max_snapshot_string_length=10
        ).to_options(summarize)
        assert (opts.run_id_key, opts.debug, opts.max_snapshot_string_length) == ("rid", False, 10)
        assert opts.output_summarizer is summarize
        assert opts.persister is persister
