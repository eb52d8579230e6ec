"""Store adapters: in-memory (tests, single process) and asyncpg-backed Postgres."""

from __future__ import annotations

from linforge.storage.memory import (
    MemoryGraphStore,
    MemoryPromptStore,
    MemoryRunStore,
    MemoryStepPersister,
)

__all__ = [
    "MemoryGraphStore",
    "MemoryPromptStore",
    "MemoryRunStore",
    "MemoryStepPersister",
]
