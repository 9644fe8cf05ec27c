"""Soft assertions that record failures and let the test continue."""

from __future__ import annotations

from typing import Any, List

from loguru import logger

from fedharness.errors import HarnessFailure


class SoftAssertions:
    """Collect assertion failures so several issues surface in one run.

    Usage:
        with SoftAssertions() as soft:
            soft.equal(body["room_id"], room_id, "room_id")
            soft.check("servers" in body, "servers missing")

    Leaving the block raises a single :class:`HarnessFailure` listing every
    recorded failure. Exceptions raised inside the block take precedence.
    """

    def __init__(self) -> None:
        self.failures: List[str] = []

    def check(self, condition: bool, message: str) -> bool:
        if not condition:
            logger.warning("soft assertion failed: {}", message)
            self.failures.append(message)
        return condition

    def equal(self, actual: Any, expected: Any, label: str) -> bool:
        return self.check(
            actual == expected,
            f"{label}: expected {expected!r}, got {actual!r}",
        )

    def contains(self, container: Any, item: Any, label: str) -> bool:
        return self.check(item in container, f"{label}: {item!r} not in {container!r}")

    @property
    def failed(self) -> bool:
        return bool(self.failures)

    def raise_if_failed(self) -> None:
        if not self.failures:
            return
        summary = "\n".join(f"  - {failure}" for failure in self.failures)
        raise HarnessFailure(f"{len(self.failures)} soft assertion(s) failed:\n{summary}")

    def __enter__(self) -> "SoftAssertions":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            self.raise_if_failed()
        return False
