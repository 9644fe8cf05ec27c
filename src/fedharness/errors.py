"""Failures raised to the test framework.

Everything here subclasses ``AssertionError`` so pytest reports it as a test
failure and stops the current test.
"""

from __future__ import annotations

from typing import Optional


class HarnessFailure(AssertionError):
    """A harness-level failure that terminates the current test."""


class PollTimeout(HarnessFailure):
    """Raised when a polling call exceeds its deadline."""

    def __init__(self, description: str, checked: int, timeout: float) -> None:
        super().__init__(
            f"{description} timed out after {timeout:.2f}s. "
            f"Called check function {checked} times"
        )
        self.description = description
        self.checked = checked
        self.timeout = timeout


class ResponseStatusError(HarnessFailure):
    """Raised when a request that must succeed returns a non-2xx status."""

    def __init__(
        self, method: str, url: str, status: int, body: Optional[str] = None
    ) -> None:
        message = f"{method} {url} returned HTTP {status}"
        if body:
            message += f": {body}"
        super().__init__(message)
        self.method = method
        self.url = url
        self.status = status
        self.body = body


class JSONFieldError(HarnessFailure):
    """Raised when a JSON response is missing a field or has the wrong shape."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"JSON field '{key}' {reason}")
        self.key = key
        self.reason = reason
