"""Ordered key-path lookups shared by every adapter.

Backends spell the same logical value differently (a session id under
``session_id`` or ``chatId``; response text under one of five keys). Each
such value is described once here as an ordered tuple of key paths, and
the first path that resolves to a usable value wins. Supporting a new
backend quirk means adding a path to one of these tuples.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

KeyPath = tuple[str | int, ...]

CANDIDATE_TEXT_PATH: KeyPath = ("candidates", 0, "content", "parts", 0, "text")

# Partial message line: {type: "stream_event", event: {type: "content_block_delta", delta: {text}}}
PARTIAL_DELTA_TEXT_PATH: KeyPath = ("event", "delta", "text")
PARTIAL_EVENT_TYPE_PATH: KeyPath = ("event", "type")

# Prioritized lookup for single aggregate payloads
TEXT_FIELDS: tuple[KeyPath, ...] = (
    ("response",),
    ("text",),
    ("result",),
    ("output",),
    ("message",),
)

AGGREGATE_TEXT_FIELDS: tuple[KeyPath, ...] = (CANDIDATE_TEXT_PATH, *TEXT_FIELDS)

SESSION_ID_FIELDS: tuple[KeyPath, ...] = (
    ("session_id",),
    ("chatId",),
)

COST_FIELDS: tuple[KeyPath, ...] = (
    ("total_cost_usd",),
    ("cost_usd",),
)

MODEL_FIELDS: tuple[KeyPath, ...] = (
    ("modelVersion",),
    ("model",),
)

ERROR_MESSAGE_FIELDS: tuple[KeyPath, ...] = (
    ("error", "message"),
    ("error",),
    ("message",),
    ("result",),
)


def get_path(data: Any, path: KeyPath) -> Any:
    """Resolve ``path`` inside nested dicts/lists, or return None."""
    current = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or not -len(current) <= key < len(current):
                return None
            current = current[key]
        else:
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
    return current


def first_value(
    data: Any,
    paths: Sequence[KeyPath],
    accept: Callable[[Any], bool] = lambda v: v is not None,
) -> Any:
    """Return the first resolved value that ``accept`` approves, else None."""
    for path in paths:
        value = get_path(data, path)
        if accept(value):
            return value
    return None


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def _number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def first_text(data: Any, paths: Sequence[KeyPath] = TEXT_FIELDS) -> str | None:
    """First non-empty string among ``paths``."""
    return first_value(data, paths, _non_empty_str)


def session_id_of(data: Any) -> str | None:
    return first_value(data, SESSION_ID_FIELDS, _non_empty_str)


def cost_of(data: Any) -> float | None:
    value = first_value(data, COST_FIELDS, _number)
    return float(value) if value is not None else None


def model_of(data: Any) -> str | None:
    return first_value(data, MODEL_FIELDS, _non_empty_str)


def error_message_of(data: Any) -> str | None:
    return first_value(data, ERROR_MESSAGE_FIELDS, _non_empty_str)
