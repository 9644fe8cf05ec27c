"""Canonical JSON and unpadded base64 as used on the federation wire."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any


def canonical_json(value: Any) -> bytes:
    """Encode ``value`` as canonical JSON bytes.

    Keys are sorted, insignificant whitespace is dropped and non-ASCII text is
    emitted as UTF-8 rather than escaped.
    """
    return json.dumps(
        value,
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=True,
        allow_nan=False,
    ).encode("utf-8")


def encode_base64(data: bytes, *, urlsafe: bool = False) -> str:
    """Encode ``data`` as unpadded base64."""
    encoder = base64.urlsafe_b64encode if urlsafe else base64.b64encode
    return encoder(data).decode("ascii").rstrip("=")


def decode_base64(value: str) -> bytes:
    """Decode base64 that may be padded, unpadded or url-safe.

    Raises:
        ValueError: if ``value`` is not valid base64.
    """
    if not isinstance(value, str):
        raise ValueError("base64 value must be a string")
    padded = value + "=" * (-len(value) % 4)
    try:
        if "-" in value or "_" in value:
            return base64.urlsafe_b64decode(padded)
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64: {value!r}") from exc
