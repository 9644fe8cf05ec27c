"""Helpers for digging fields out of JSON response bodies.

Paths are dot-separated. A literal ``.`` or ``*`` inside a key (room IDs
contain both in practice) must be escaped with a backslash; see
:func:`json_path_escape`. Numeric segments index into arrays.
"""

from __future__ import annotations

from typing import Any, List

import httpx

from fedharness.errors import HarnessFailure, JSONFieldError

_MISSING = object()


def json_path_escape(key: str) -> str:
    """Escape ``key`` so it is treated as one path segment."""
    return key.replace(".", "\\.").replace("*", "\\*")


def split_json_path(path: str) -> List[str]:
    segments: List[str] = []
    current: List[str] = []
    escaped = False
    for char in path:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ".":
            segments.append("".join(current))
            current = []
        else:
            current.append(char)
    segments.append("".join(current))
    return segments


def get_json_path(body: Any, path: str, default: Any = None) -> Any:
    """Return the value at ``path`` in ``body``, or ``default`` if absent."""
    value = body
    for segment in split_json_path(path):
        if isinstance(value, dict):
            if segment not in value:
                return default
            value = value[segment]
        elif isinstance(value, list) and segment.isdigit():
            index = int(segment)
            if index >= len(value):
                return default
            value = value[index]
        else:
            return default
    return value


def get_json_field_str(body: Any, path: str) -> str:
    """Return the non-empty string at ``path`` or fail the test."""
    value = get_json_path(body, path, _MISSING)
    if value is _MISSING:
        raise JSONFieldError(path, f"missing from {body!r}")
    if not isinstance(value, str) or not value:
        raise JSONFieldError(path, f"is not a non-empty string, body: {body!r}")
    return value


def parse_json(response: httpx.Response) -> Any:
    """Parse a response body as JSON or fail the test."""
    try:
        return response.json()
    except ValueError as exc:
        raise HarnessFailure(
            f"MustParseJSON: response from {response.request.url} is not valid JSON"
        ) from exc
