"""Step Recorder: per-node instrumentation for graph runs.

Wraps a node's execution with:
1. Run-scoped step numbering (1, 2, 3, ... per run id)
2. Input/output summaries
3. Duration and token-delta measurement
4. Optional before/after state snapshots (debug mode)
5. Fire-and-forget persistence through a StepPersister

Persistence runs as detached background tasks. A failed write is logged and
never reaches the node or the graph.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from linforge.core.define_node import FunctionNode, NodeExecutor, OutputSummarizer, RunFn
from linforge.core.state_sanitizer import MAX_STRING_LENGTH, sanitize_state
from linforge.core.stores import StepPersister
from linforge.core.types import StepData

logger = logging.getLogger(__name__)

InputSummarizer = Callable[[Any], dict[str, Any]]


class StepCounter:
    """run_id -> last step number. Cleared by the RunManager when a run ends."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}

    def next(self, run_id: str) -> int:
        number = self._counters.get(run_id, 0) + 1
        self._counters[run_id] = number
        return number

    def peek(self, run_id: str) -> int:
        """Last number handed out for run_id (0 if none)."""
        return self._counters.get(run_id, 0)

    def clear(self, run_id: str) -> None:
        self._counters.pop(run_id, None)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._counters

    def __len__(self) -> int:
        return len(self._counters)


@dataclass
class StepRecordingOptions:
    """How a node's steps are recorded.

    Fields:
        persister: Where step records are written.
        run_id_key: State field holding the run id. Steps are only recorded
            when this field holds a string.
        input_summarizer: Custom ``state -> summary``; default counts list fields.
        output_summarizer: Custom ``(input, output) -> summary``; default is the raw output.
        debug: Record sanitized state snapshots before and after the node.
    """

    persister: StepPersister
    run_id_key: str = "agent_run_id"
    input_summarizer: InputSummarizer | None = None
    output_summarizer: OutputSummarizer | None = None
    debug: bool = False
    max_snapshot_string_length: int = MAX_STRING_LENGTH


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def as_state_dict(value: Any) -> dict[str, Any]:
    """View a node state or update as a plain dict."""
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, BaseModel):
        return dict(value)
    return {"result": value}


def as_summary(value: Any) -> dict[str, Any]:
    """Coerce a summarizer result to a dict; other values land under ``summary``."""
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return {str(k): v for k, v in value.items()}
    return {"summary": value}


def default_input_summary(state: Any) -> dict[str, Any]:
    """Copy iteration/tokens_used and add a ``<field>_count`` for each list field."""
    data = as_state_dict(state)
    summary: dict[str, Any] = {}
    if "iteration" in data:
        summary["iteration"] = data["iteration"]
    if "tokens_used" in data:
        summary["tokens_used"] = data["tokens_used"]
    for key, value in data.items():
        if isinstance(value, (list, tuple)):
            summary[f"{key}_count"] = len(value)
    return summary


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def tokens_delta(state: Any, result: Any) -> int | float:
    """result.tokens_used - state.tokens_used when both are numbers, else 0."""
    before = as_state_dict(state).get("tokens_used")
    after = as_state_dict(result).get("tokens_used")
    if _is_number(before) and _is_number(after):
        return after - before
    return 0


# ---------------------------------------------------------------------------
# Recording middleware
# ---------------------------------------------------------------------------


class RecordingNode:
    """NodeExecutor middleware that records every call of the wrapped executor."""

    def __init__(
        self,
        node_key: str,
        inner: NodeExecutor,
        options: StepRecordingOptions,
        recorder: StepRecorder,
    ) -> None:
        self.node_key = node_key
        self.inner = inner
        self.options = options
        self._recorder = recorder

    async def execute(self, state: Any) -> Any:
        opts = self.options
        run_id = as_state_dict(state).get(opts.run_id_key)

        # No run id: standalone execution, nothing to record.
        if not run_id or not isinstance(run_id, str):
            return await self.inner.execute(state)

        step_number = self._recorder.counter.next(run_id)
        started = time.monotonic()
        if opts.input_summarizer is not None:
            input_summary = as_summary(opts.input_summarizer(state))
        else:
            input_summary = default_input_summary(state)
        state_before = (
            sanitize_state(state, opts.max_snapshot_string_length) if opts.debug else None
        )

        # Summaries and snapshots are part of the step: if they raise, the
        # step is recorded as failed.
        try:
            result = await self.inner.execute(state)
            duration_ms = _elapsed_ms(started)
            if opts.output_summarizer is not None:
                output_summary = as_summary(opts.output_summarizer(state, result))
            else:
                output_summary = as_state_dict(result)
            tokens = tokens_delta(state, result)
            state_after = None
            if opts.debug:
                merged = {**as_state_dict(state), **as_state_dict(result)}
                state_after = sanitize_state(merged, opts.max_snapshot_string_length)
        except Exception as exc:
            self._record(
                run_id,
                step_number,
                input=input_summary,
                output={"error": str(exc)},
                duration_ms=_elapsed_ms(started),
                tokens_used=0,
                state_before=state_before,
            )
            raise

        self._record(
            run_id,
            step_number,
            input=input_summary,
            output=output_summary,
            duration_ms=duration_ms,
            tokens_used=tokens,
            state_before=state_before,
            state_after=state_after,
        )
        return result

    def _record(self, run_id: str, step_number: int, **fields: Any) -> None:
        # A step that cannot be built is logged and dropped; the node result stands.
        try:
            data = StepData(
                agent_run_id=run_id,
                node_id=self.node_key,
                step_number=step_number,
                **fields,
            )
        except Exception:
            logger.exception(
                "Could not build step %d for node %s (run %s)", step_number, self.node_key, run_id
            )
            return
        self._recorder.submit(self.options.persister, data)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class StepRecorder:
    """Owns the step counters and the in-flight persistence tasks.

    One recorder is shared by a GraphCompiler and the RunManager that runs
    its graphs, so the manager can reset a run's numbering when it ends.
    """

    def __init__(self, counter: StepCounter | None = None) -> None:
        self.counter = counter or StepCounter()
        self._pending: set[asyncio.Task] = set()

    def wrap(
        self,
        node_key: str,
        node_fn: RunFn | NodeExecutor,
        options: StepRecordingOptions,
    ) -> Callable[[Any], Any]:
        """Wrap a node function; returns an async ``state -> result`` function."""
        inner = node_fn if isinstance(node_fn, NodeExecutor) else FunctionNode(node_fn)
        return RecordingNode(node_key, inner, options, self).execute

    def clear_step_counter(self, run_id: str) -> None:
        self.counter.clear(run_id)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def submit(self, persister: StepPersister, data: StepData) -> None:
        """Schedule a step write without waiting for it."""
        task = asyncio.get_running_loop().create_task(self._persist(persister, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every pending step write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _persist(self, persister: StepPersister, data: StepData) -> None:
        try:
            result = persister.create_step(data)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Failed to record step %d for node %s (run %s)",
                data.step_number,
                data.node_id,
                data.agent_run_id,
            )


# Shared recorder behind the module-level helpers
_default_recorder: StepRecorder | None = None


def get_default_recorder() -> StepRecorder:
    """Get or create the process-wide recorder."""
    global _default_recorder
    if _default_recorder is None:
        _default_recorder = StepRecorder()
    return _default_recorder


def with_step_recording(
    node_key: str,
    node_fn: RunFn | NodeExecutor,
    options: StepRecordingOptions,
    *,
    recorder: StepRecorder | None = None,
) -> Callable[[Any], Any]:
    """Wrap a node function with automatic step recording."""
    return (recorder or get_default_recorder()).wrap(node_key, node_fn, options)


def clear_step_counter(run_id: str, *, recorder: StepRecorder | None = None) -> None:
    """Reset step numbering for a run (called when the run ends)."""
    (recorder or get_default_recorder()).clear_step_counter(run_id)
