"""State sanitizer: turn graph state into a JSON-safe, size-bounded snapshot.

Handles chat messages, callables, overly long strings and other values that
do not serialize cleanly. Used by the step recorder in debug mode.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Mapping
from typing import Any

from langchain_core.messages import BaseMessage
from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAX_STRING_LENGTH = 5000


class _CircularReference(ValueError):
    pass


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit] + f"...[truncated, {len(value)} chars]"


def _serialize_message(value: BaseMessage, limit: int) -> dict[str, Any]:
    content = value.content
    if isinstance(content, str) and len(content) > limit:
        content = content[:limit] + "...[truncated]"
    out: dict[str, Any] = {"_type": value.type, "content": content}
    tool_calls = getattr(value, "tool_calls", None)
    if tool_calls:
        out["tool_calls"] = list(tool_calls)
    return out


def _transform(value: Any, limit: int, path: set[int]) -> Any:
    if isinstance(value, str):
        return _truncate(value, limit)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, BaseMessage):
        out = _serialize_message(value, limit)
        # Content is already truncated with the shorter message marker.
        if not isinstance(out["content"], str):
            out["content"] = _transform(out["content"], limit, path)
        if "tool_calls" in out:
            out["tool_calls"] = _transform(out["tool_calls"], limit, path)
        return out

    if isinstance(value, BaseModel):
        value = value.model_dump()
    elif dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}

    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        marker = id(value)
        if marker in path:
            raise _CircularReference("circular reference in state")
        path.add(marker)
        try:
            if isinstance(value, Mapping):
                return {
                    str(k): _transform(v, limit, path)
                    for k, v in value.items()
                    if not callable(v)
                }
            return [_transform(v, limit, path) for v in value if not callable(v)]
        finally:
            path.discard(marker)

    if callable(value):
        return None
    # Datetimes, UUIDs, enums and anything else: let json decide, else str()
    return json.loads(json.dumps(value, default=str))


def _fallback_summary(state: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in state.items():
        if isinstance(value, (list, tuple)):
            out[key] = f"[Array: {len(value)} items]"
        elif isinstance(value, Mapping):
            out[key] = f"[Object: {len(value)} keys]"
        elif callable(value):
            continue
        elif hasattr(value, "__dict__") and not isinstance(value, type):
            out[key] = f"[Object: {len(vars(value))} keys]"
        else:
            out[key] = value
    return out


def sanitize_state(state: Any, max_length: int = MAX_STRING_LENGTH) -> dict[str, Any]:
    """Sanitize graph state into a JSON-serializable dict. Never raises.

    One transform pass over the whole state; if that fails (circular
    references and the like) a shallow per-key summary is returned instead.
    """
    if isinstance(state, BaseModel):
        state = dict(state)
    if not isinstance(state, Mapping):
        return {}
    try:
        result = _transform(state, max_length, set())
        # Round-trip to guarantee the snapshot is plain JSON.
        return json.loads(json.dumps(result, default=str))
    except Exception as exc:
        logger.debug("State sanitize fell back to shallow summary: %s", exc)
        return _fallback_summary(state)
