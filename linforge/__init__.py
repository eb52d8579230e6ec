"""linforge: compile stored graph definitions into runnable LangGraph graphs.

Public API:
    - define_node / NodeRegistry: hand-written node implementations
    - GraphCompiler: GraphDefinition + registry -> compiled StateGraph
    - StepRecorder / with_step_recording: per-node step records
    - sanitize_state: JSON-safe state snapshots
    - RunManager: background runs with abort and timeout
    - PromptLoader: cached active prompt per node
"""

from __future__ import annotations

from linforge.config import LinforgeSettings, get_settings, reset_settings
from linforge.core.define_node import NodeDefinition, NodeExecutor, define_node
from linforge.core.exceptions import (
    DuplicateNodeError,
    DuplicateRunError,
    GraphCompileError,
    LinforgeError,
    NodeDefinitionError,
    RunAbortedError,
    UnboundNodesError,
)
from linforge.core.graph_compiler import GraphCompiler, StepRecordingConfig
from linforge.core.node_registry import NodeRegistry
from linforge.core.prompt_loader import PromptLoader
from linforge.core.run_manager import AbortSignal, RunCallbacks, RunManager
from linforge.core.state_sanitizer import sanitize_state
from linforge.core.step_recorder import (
    StepRecorder,
    StepRecordingOptions,
    clear_step_counter,
    get_default_recorder,
    with_step_recording,
)
from linforge.core.stores import GraphStore, PromptStore, RunStore, StepPersister
from linforge.core.types import (
    BindingStatus,
    CompiledGraph,
    GraphDefinition,
    GraphEdgeDef,
    GraphNodeDef,
    PromptVersion,
    ReservedMarker,
    RunRecord,
    RunStatus,
    StepData,
)

__all__ = [
    "AbortSignal",
    "BindingStatus",
    "CompiledGraph",
    "DuplicateNodeError",
    "DuplicateRunError",
    "GraphCompileError",
    "GraphCompiler",
    "GraphDefinition",
    "GraphEdgeDef",
    "GraphNodeDef",
    "GraphStore",
    "LinforgeError",
    "LinforgeSettings",
    "NodeDefinition",
    "NodeDefinitionError",
    "NodeExecutor",
    "NodeRegistry",
    "PromptLoader",
    "PromptStore",
    "PromptVersion",
    "ReservedMarker",
    "RunAbortedError",
    "RunCallbacks",
    "RunManager",
    "RunRecord",
    "RunStatus",
    "RunStore",
    "StepData",
    "StepPersister",
    "StepRecorder",
    "StepRecordingConfig",
    "StepRecordingOptions",
    "UnboundNodesError",
    "clear_step_counter",
    "define_node",
    "get_default_recorder",
    "get_settings",
    "reset_settings",
    "sanitize_state",
    "with_step_recording",
]
