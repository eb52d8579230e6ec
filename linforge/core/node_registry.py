"""Node Registry: key -> NodeDefinition lookup for graph compilation."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from linforge.core.define_node import NodeDefinition
from linforge.core.exceptions import DuplicateNodeError
from linforge.core.types import BindingStatus, GraphDefinition, is_internal_key

logger = logging.getLogger(__name__)


class NodeRegistry:
    """Holds every node implementation created with define_node().

    Populate once at startup, before any graph is compiled. Lookups preserve
    insertion order.
    """

    def __init__(self, nodes: Iterable[NodeDefinition] | None = None) -> None:
        self._nodes: dict[str, NodeDefinition] = {}
        if nodes is not None:
            self.register_all(nodes)

    def register(self, node: NodeDefinition) -> None:
        """Register a node. Raises DuplicateNodeError if the key is taken."""
        if node.key in self._nodes:
            raise DuplicateNodeError(node.key)
        self._nodes[node.key] = node
        logger.debug("Registered node: %s", node.key)

    def register_all(self, nodes: Iterable[NodeDefinition]) -> None:
        for node in nodes:
            self.register(node)

    def get(self, key: str) -> NodeDefinition | None:
        return self._nodes.get(key)

    def has(self, key: str) -> bool:
        return key in self._nodes

    def keys(self) -> list[str]:
        return list(self._nodes.keys())

    def entries(self) -> list[NodeDefinition]:
        return list(self._nodes.values())

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[NodeDefinition]:
        return iter(self.entries())

    def get_binding_status(self, graph_def: GraphDefinition) -> BindingStatus:
        """Compare a graph definition against the registry.

        bound: defined in the graph and implemented here.
        skeleton: defined in the graph with no implementation.
        Internal keys (__start__, __end__, ...) appear in neither.
        """
        bound: list[str] = []
        skeleton: list[str] = []
        for key in graph_def.node_keys():
            if is_internal_key(key):
                continue
            if key in self._nodes:
                bound.append(key)
            else:
                skeleton.append(key)
        return BindingStatus(bound=bound, skeleton=skeleton)
