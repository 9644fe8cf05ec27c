"""httpx clients that log every request they make."""

from __future__ import annotations

import time
from typing import Optional

import httpx
from loguru import logger

_START_KEY = "fedharness_started_at"


def _on_request(request: httpx.Request) -> None:
    request.extensions[_START_KEY] = time.perf_counter()


def _on_response(response: httpx.Response) -> None:
    request = response.request
    started = request.extensions.get(_START_KEY)
    elapsed = f"{(time.perf_counter() - started) * 1000:.1f}ms" if started else "?"
    logger.info(
        "{} {} => {} {} ({})",
        request.method,
        request.url.path,
        response.status_code,
        response.reason_phrase,
        elapsed,
    )


def new_logged_client(
    client: Optional[httpx.Client] = None, *, timeout: float = 30.0
) -> httpx.Client:
    """Return ``client`` (or a new one) with request/response logging hooks.

    Transport errors never reach the response hook; callers log those.
    """
    if client is None:
        client = httpx.Client(timeout=timeout)
    hooks = client.event_hooks
    client.event_hooks = {
        "request": [*hooks.get("request", []), _on_request],
        "response": [*hooks.get("response", []), _on_response],
    }
    return client
