"""Exception hierarchy for graph compilation and run management."""

from __future__ import annotations


class LinforgeError(Exception):
    """Base exception for all linforge errors."""

    pass


class NodeDefinitionError(LinforgeError):
    """Raised when define_node() receives an invalid key or run function."""

    pass


class DuplicateNodeError(LinforgeError):
    """Raised when a node key is registered twice."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"node {key!r} is already registered")


class GraphCompileError(LinforgeError):
    """Raised when a graph definition cannot be compiled."""

    pass


class UnboundNodesError(GraphCompileError):
    """Raised when a graph definition references nodes with no implementation."""

    def __init__(self, keys: list[str]) -> None:
        self.keys = list(keys)
        super().__init__(
            f"nodes have no registered implementation: {', '.join(self.keys)}. "
            "Define them with define_node() and register them in the NodeRegistry first."
        )


class DuplicateRunError(LinforgeError):
    """Raised when start_run() is called for a run id that is still executing."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"run {run_id!r} is already running")


class RunAbortedError(LinforgeError):
    """Raised inside the run task when its abort signal fires."""

    def __init__(self, run_id: str, reason: str | None = None) -> None:
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"run {run_id!r} aborted: {reason or 'no reason given'}")
