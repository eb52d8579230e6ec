"""Node definitions: the hand-written implementations a graph binds to.

A node is a named async function ``state -> partial state update`` with
optional conditional routes. Nodes are created with define_node(), which
validates the key and run function and returns an immutable value.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from linforge.core.exceptions import NodeDefinitionError

RunFn = Callable[[Any], Any]
RoutePredicate = Callable[[Any], bool]
OutputSummarizer = Callable[[Any, Any], dict[str, Any]]


@runtime_checkable
class NodeExecutor(Protocol):
    """Anything that can execute one node step against a state."""

    async def execute(self, state: Any) -> Any:
        ...


async def call_node_fn(fn: RunFn, state: Any) -> Any:
    """Call a node function, awaiting the result if it is awaitable."""
    result = fn(state)
    if inspect.isawaitable(result):
        result = await result
    return result


class FunctionNode:
    """Adapts a plain (sync or async) function to the NodeExecutor interface."""

    __slots__ = ("fn",)

    def __init__(self, fn: RunFn) -> None:
        self.fn = fn

    async def execute(self, state: Any) -> Any:
        return await call_node_fn(self.fn, state)


@dataclass(frozen=True)
class NodeDefinition:
    """A registered node implementation.

    Fields:
        key: Unique identifier, matches GraphNodeDef.key.
        run: Node logic, ``state -> partial state update``.
        label: Display label (falls back to key).
        routes: Route key -> predicate over state, used by conditional edges.
        summarize_output: Custom ``(input, output) -> summary`` for step records.
    """

    key: str
    run: RunFn
    label: str | None = None
    routes: Mapping[str, RoutePredicate] | None = None
    summarize_output: OutputSummarizer | None = None

    @property
    def display_label(self) -> str:
        return self.label or self.key

    async def execute(self, state: Any) -> Any:
        return await call_node_fn(self.run, state)


def define_node(
    key: str,
    run: RunFn,
    *,
    label: str | None = None,
    routes: Mapping[str, RoutePredicate] | None = None,
    summarize_output: OutputSummarizer | None = None,
) -> NodeDefinition:
    """Create a node definition.

    Raises NodeDefinitionError if ``key`` is not a non-empty string or
    ``run`` is not callable.
    """
    if not key or not isinstance(key, str):
        raise NodeDefinitionError("define_node: key must be a non-empty string")
    if not callable(run):
        raise NodeDefinitionError(f"define_node({key}): run must be callable")
    if routes is not None:
        for route_key, predicate in routes.items():
            if not callable(predicate):
                raise NodeDefinitionError(
                    f"define_node({key}): route {route_key!r} must be callable"
                )

    return NodeDefinition(
        key=key,
        run=run,
        label=label,
        routes=MappingProxyType(dict(routes)) if routes else None,
        summarize_output=summarize_output,
    )
