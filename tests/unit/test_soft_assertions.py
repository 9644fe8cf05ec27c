"""Tests for soft assertions."""

import pytest

from fedharness.assertions import SoftAssertions
from fedharness.errors import HarnessFailure


def test_passing_block_does_not_raise():
    with SoftAssertions() as soft:
        assert soft.equal(1, 1, "one")
        assert soft.contains(["a"], "a", "letters")
    assert not soft.failed


def test_collects_every_failure():
    with pytest.raises(HarnessFailure) as excinfo:
        with SoftAssertions() as soft:
            soft.equal("a", "b", "letter")
            soft.check(False, "flag unset")
            soft.contains([1, 2], 3, "numbers")

    message = str(excinfo.value)
    assert message.startswith("3 soft assertion(s) failed:")
    assert "letter: expected 'b', got 'a'" in message
    assert "flag unset" in message
    assert "numbers: 3 not in [1, 2]" in message


def test_exception_in_block_takes_precedence():
    with pytest.raises(KeyError):
        with SoftAssertions() as soft:
            soft.check(False, "recorded")
            raise KeyError("boom")


def test_raise_if_failed_without_context_manager():
    soft = SoftAssertions()
    soft.check(True, "fine")
    soft.raise_if_failed()

    soft.check(False, "broken")
    with pytest.raises(HarnessFailure, match="broken"):
        soft.raise_if_failed()
