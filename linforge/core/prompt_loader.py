"""Prompt Loader: cached access to each node's active prompt version."""

from __future__ import annotations

import logging

from linforge.core.stores import PromptStore
from linforge.core.types import PromptVersion

logger = logging.getLogger(__name__)


class PromptLoader:
    """In-memory cache in front of a PromptStore.

    Only hits are cached; a node without an active prompt is looked up again
    on the next call. Call invalidate_cache() when the active version changes.
    """

    def __init__(self, store: PromptStore) -> None:
        self._store = store
        self._cache: dict[str, PromptVersion] = {}

    async def get_active_prompt(self, node_id: str) -> PromptVersion | None:
        cached = self._cache.get(node_id)
        if cached is not None:
            return cached

        prompt = await self._store.get_active_prompt(node_id)
        if prompt is None:
            return None
        self._cache[node_id] = prompt
        logger.debug("Cached prompt %s v%d for node %s", prompt.id, prompt.version, node_id)
        return prompt

    def invalidate_cache(self, node_id: str | None = None) -> None:
        """Drop one node's cached prompt, or all of them."""
        if node_id is None:
            self._cache.clear()
        else:
            self._cache.pop(node_id, None)
