"""Run Manager: background execution, cancellation and status tracking of graph runs.

Lifecycle per run:
    running -> completed | failed | cancelled

start_run() returns immediately; the graph runs in a background task and
outcomes are reported only through the RunStore and callbacks. Aborts and
timeouts share one AbortSignal and both end the run as cancelled, never
failed. Cancellation is cooperative: the invocation task is cancelled and
unwinds at its next await.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from linforge.config import get_settings
from linforge.core.exceptions import DuplicateRunError, RunAbortedError
from linforge.core.step_recorder import StepRecorder, get_default_recorder
from linforge.core.stores import RunStore
from linforge.core.types import RunRecord, RunStatus

logger = logging.getLogger(__name__)


@runtime_checkable
class AsyncInvokable(Protocol):
    """A compiled graph (or any runnable) that can be awaited with an input."""

    async def ainvoke(self, input: Any, config: Any = None, **kwargs: Any) -> Any:
        ...


class AbortSignal:
    """One-shot cancellation flag with a reason. Later aborts are no-ops."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str | None = None) -> bool:
        """Set the signal. Returns False if it was already set."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RunCallbacks:
    """Optional hooks, sync or async. Cancellation never calls on_failed."""

    on_completed: Callable[[str, Any], Any] | None = None
    on_failed: Callable[[str, BaseException], Any] | None = None


@dataclass
class RunningEntry:
    abort_signal: AbortSignal
    started_at: float
    task: asyncio.Task | None = None
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class RunManager:
    """Tracks in-flight runs by id. At most one entry per run id."""

    def __init__(
        self,
        *,
        recorder: StepRecorder | None = None,
        default_timeout_ms: int | None = None,
    ) -> None:
        self._recorder = recorder or get_default_recorder()
        self._default_timeout_ms = default_timeout_ms
        self._running: dict[str, RunningEntry] = {}

    # -- lifecycle ---------------------------------------------------------

    def start_run(
        self,
        graph: AsyncInvokable,
        *,
        run_id: str,
        graph_slug: str,
        input_state: dict[str, Any],
        store_input: dict[str, Any] | None = None,
        store: RunStore | None = None,
        callbacks: RunCallbacks | None = None,
        metadata: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
    ) -> None:
        """Start a run in the background. Must be called from a running event loop.

        Raises DuplicateRunError if run_id is already executing.
        """
        if run_id in self._running:
            raise DuplicateRunError(run_id)

        if timeout_ms is None:
            timeout_ms = self._default_timeout_ms or get_settings().run_timeout_ms

        loop = asyncio.get_running_loop()
        entry = RunningEntry(abort_signal=AbortSignal(), started_at=time.time())
        entry.timer = loop.call_later(
            timeout_ms / 1000, self._on_timeout, run_id, entry, timeout_ms
        )
        self._running[run_id] = entry
        entry.task = loop.create_task(
            self._execute(
                graph,
                entry,
                run_id=run_id,
                graph_slug=graph_slug,
                input_state=input_state,
                store_input=store_input,
                store=store,
                callbacks=callbacks or RunCallbacks(),
                metadata=metadata,
            ),
            name=f"linforge-run-{run_id}",
        )
        logger.info("Run started: %s (graph=%s, timeout=%dms)", run_id, graph_slug, timeout_ms)

    def abort_run(self, run_id: str, reason: str | None = None) -> bool:
        """Trigger the run's abort signal. Returns False if the run is not tracked."""
        entry = self._running.get(run_id)
        if entry is None:
            return False
        if entry.abort_signal.abort(reason or "aborted by caller"):
            logger.info("Run abort requested: %s", run_id)
        return True

    # -- introspection -----------------------------------------------------

    def is_running(self, run_id: str) -> bool:
        return run_id in self._running

    def get_running_ids(self) -> list[str]:
        return list(self._running.keys())

    @property
    def running_count(self) -> int:
        return len(self._running)

    async def wait(self, run_id: str) -> None:
        """Wait until a tracked run reaches a terminal state (no-op if untracked)."""
        entry = self._running.get(run_id)
        if entry is not None and entry.task is not None:
            await asyncio.shield(entry.task)

    async def shutdown(self) -> None:
        """Abort every tracked run and wait for all of them to finish."""
        tasks = []
        for run_id, entry in list(self._running.items()):
            entry.abort_signal.abort("run manager shutting down")
            if entry.task is not None:
                tasks.append(entry.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Run manager shut down (%d runs aborted)", len(tasks))

    # -- internals ---------------------------------------------------------

    def _on_timeout(self, run_id: str, entry: RunningEntry, timeout_ms: int) -> None:
        if entry.abort_signal.abort(f"run timed out after {timeout_ms}ms"):
            logger.warning("Run %s timed out after %dms", run_id, timeout_ms)

    async def _execute(
        self,
        graph: AsyncInvokable,
        entry: RunningEntry,
        *,
        run_id: str,
        graph_slug: str,
        input_state: dict[str, Any],
        store_input: dict[str, Any] | None,
        store: RunStore | None,
        callbacks: RunCallbacks,
        metadata: dict[str, Any] | None,
    ) -> None:
        signal = entry.abort_signal
        try:
            if store is not None:
                record = RunRecord(
                    id=run_id,
                    graph_slug=graph_slug,
                    status=RunStatus.RUNNING,
                    input=store_input if store_input is not None else input_state,
                    metadata=metadata,
                    tokens_used=0,
                )
                await self._store_call(store, "create_run", run_id, record)

            config = {"configurable": {"thread_id": run_id}}
            result = await self._invoke(graph, input_state, config, run_id, signal)

            if store is not None:
                await self._store_call(
                    store, "update_run_status", run_id, run_id, RunStatus.COMPLETED
                )
            logger.info("Run completed: %s", run_id)
            await self._callback(callbacks.on_completed, run_id, result)

        except Exception as exc:
            # Cancellation is not an error.
            if signal.aborted:
                if store is not None:
                    await self._store_call(
                        store, "update_run_status", run_id, run_id, RunStatus.CANCELLED
                    )
                logger.info("Run cancelled: %s (%s)", run_id, signal.reason)
                return

            logger.error("Run failed: %s: %s", run_id, exc)
            if store is not None:
                await self._store_call(
                    store,
                    "update_run_status",
                    run_id,
                    run_id,
                    RunStatus.FAILED,
                    {"error": str(exc)},
                )
            await self._callback(callbacks.on_failed, run_id, exc)

        finally:
            if entry.timer is not None:
                entry.timer.cancel()
            self._recorder.clear_step_counter(run_id)
            self._running.pop(run_id, None)

    async def _invoke(
        self,
        graph: AsyncInvokable,
        input_state: dict[str, Any],
        config: dict[str, Any],
        run_id: str,
        signal: AbortSignal,
    ) -> Any:
        """Race the graph invocation against the abort signal."""
        if signal.aborted:
            raise RunAbortedError(run_id, signal.reason)

        invocation = asyncio.ensure_future(graph.ainvoke(input_state, config=config))
        aborted = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({invocation, aborted}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            invocation.cancel()
            raise
        finally:
            aborted.cancel()

        if invocation.done():
            return invocation.result()

        invocation.cancel()
        try:
            await invocation
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Run %s raised while unwinding after abort", run_id, exc_info=True)
        raise RunAbortedError(run_id, signal.reason)

    async def _store_call(self, store: RunStore, operation: str, run_id: str, *args: Any) -> None:
        """Call ``store.<operation>(*args)``; failures are logged against run_id and swallowed."""
        try:
            result = getattr(store, operation)(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("RunStore.%s failed for run %s", operation, run_id)

    async def _callback(self, fn: Callable[..., Any] | None, *args: Any) -> None:
        if fn is None:
            return
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Run callback %s raised", getattr(fn, "__name__", fn))
