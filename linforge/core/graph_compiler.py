"""Graph Compiler: GraphDefinition + NodeRegistry -> compiled LangGraph StateGraph.

Compilation:
1. Require a state schema
2. Check binding status; any skeleton node aborts compilation
3. Add every bound node (wrapped with step recording when configured)
4. Group edges by source; a group carrying a route map becomes one
   conditional edge, otherwise each edge is added as a direct edge
5. Map __start__/__end__ to LangGraph's START/END
6. Compile, passing the checkpointer through untouched
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from langgraph.graph import END, START, StateGraph

from linforge.config import get_settings
from linforge.core.define_node import NodeDefinition, OutputSummarizer, RoutePredicate
from linforge.core.exceptions import GraphCompileError, UnboundNodesError
from linforge.core.node_registry import NodeRegistry
from linforge.core.step_recorder import (
    InputSummarizer,
    StepRecorder,
    StepRecordingOptions,
    get_default_recorder,
)
from linforge.core.stores import StepPersister
from linforge.core.types import (
    CompiledGraph,
    GraphDefinition,
    GraphEdgeDef,
    ReservedMarker,
    is_internal_key,
)

logger = logging.getLogger(__name__)

_ENGINE_SENTINELS: dict[ReservedMarker, str] = {
    ReservedMarker.START: START,
    ReservedMarker.END: END,
}


@dataclass
class StepRecordingConfig:
    """Compiler-level step recording. Each node's summarize_output is picked up automatically.

    Fields left as None take their value from LinforgeSettings
    (run_id_key, step_debug, max_snapshot_string_length).
    """

    persister: StepPersister
    run_id_key: str | None = None
    input_summarizer: InputSummarizer | None = None
    debug: bool | None = None
    max_snapshot_string_length: int | None = None

    def to_options(self, output_summarizer: OutputSummarizer | None = None) -> StepRecordingOptions:
        settings = get_settings()
        return StepRecordingOptions(
            persister=self.persister,
            run_id_key=self.run_id_key or settings.run_id_key,
            input_summarizer=self.input_summarizer,
            output_summarizer=output_summarizer,
            debug=settings.step_debug if self.debug is None else self.debug,
            max_snapshot_string_length=(
                self.max_snapshot_string_length or settings.max_snapshot_string_length
            ),
        )


def resolve_node_key(key: str) -> str:
    """Translate reserved markers to LangGraph sentinels; other keys pass through."""
    marker = ReservedMarker.parse(key)
    if marker is None:
        return key
    return _ENGINE_SENTINELS[marker]


def group_edges_by_source(edges: list[GraphEdgeDef]) -> dict[str, list[GraphEdgeDef]]:
    """Group edges by source node, in first-seen order."""
    groups: dict[str, list[GraphEdgeDef]] = {}
    for edge in edges:
        groups.setdefault(edge.source, []).append(edge)
    return groups


def build_route_fn(
    route_map: Mapping[str, str],
    routes: Mapping[str, RoutePredicate],
) -> Callable[[Any], str]:
    """Build a routing function over the source node's predicates.

    Predicates are tried in route-map key order; the first match wins. When
    nothing matches, the first route-map key is returned.
    """
    route_keys = list(route_map.keys())
    default = route_keys[0]

    def route(state: Any) -> str:
        for route_key in route_keys:
            predicate = routes.get(route_key)
            if predicate is not None and predicate(state):
                return route_key
        return default

    return route


class GraphCompiler:
    """Compiles stored graph definitions against a NodeRegistry."""

    def __init__(self, registry: NodeRegistry, *, recorder: StepRecorder | None = None) -> None:
        self.registry = registry
        self.recorder = recorder or get_default_recorder()

    def compile(
        self,
        *,
        state_schema: Any,
        graph_def: GraphDefinition,
        checkpointer: Any = None,
        step_recording: StepRecordingConfig | None = None,
    ) -> CompiledGraph:
        """Compile a graph definition.

        Raises GraphCompileError if state_schema is missing and
        UnboundNodesError if any node has no implementation. Nothing is
        built in either case.
        """
        if state_schema is None:
            raise GraphCompileError(
                "state_schema is required: pass the graph's state TypedDict or pydantic model"
            )

        binding_status = self.registry.get_binding_status(graph_def)
        if binding_status.skeleton:
            raise UnboundNodesError(binding_status.skeleton)

        workflow = StateGraph(state_schema)

        for node_def in graph_def.nodes:
            if is_internal_key(node_def.key):
                continue
            impl = self.registry.get(node_def.key)
            workflow.add_node(node_def.key, self._node_fn(node_def.key, impl, step_recording))

        for source, edges in group_edges_by_source(graph_def.edges).items():
            self._add_edge_group(workflow, source, edges)

        graph = workflow.compile(checkpointer=checkpointer)
        logger.info(
            "Compiled graph %s: %d nodes, %d edges (step_recording=%s)",
            graph_def.slug,
            len(binding_status.bound),
            len(graph_def.edges),
            step_recording is not None,
        )
        return CompiledGraph(graph=graph, binding_status=binding_status)

    def _node_fn(
        self,
        key: str,
        impl: NodeDefinition,
        step_recording: StepRecordingConfig | None,
    ) -> Callable[[Any], Any]:
        if step_recording is None:
            return impl.execute
        return self.recorder.wrap(key, impl, step_recording.to_options(impl.summarize_output))

    def _add_edge_group(
        self,
        workflow: StateGraph,
        source: str,
        edges: list[GraphEdgeDef],
    ) -> None:
        source_key = resolve_node_key(source)
        impl = self.registry.get(source)
        conditional = next((e for e in edges if e.route_map), None)

        if conditional is not None and impl is not None and impl.routes:
            route_map = conditional.route_map or {}
            if sum(1 for e in edges if e.route_map) > 1:
                logger.warning(
                    "Node %s has several route maps; using the first one", source
                )
            path_map = {k: resolve_node_key(target) for k, target in route_map.items()}
            workflow.add_conditional_edges(
                source_key, build_route_fn(route_map, impl.routes), path_map
            )
            return

        for edge in edges:
            workflow.add_edge(resolve_node_key(edge.source), resolve_node_key(edge.target))
