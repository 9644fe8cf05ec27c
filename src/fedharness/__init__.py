"""Integration-test harness for federated messaging homeservers."""

from fedharness.blueprint import Blueprint, must_validate, validate
from fedharness.config import HarnessConfig
from fedharness.errors import HarnessFailure, PollTimeout
from fedharness.polling import apoll_until, poll_until

__all__ = [
    "Blueprint",
    "HarnessConfig",
    "HarnessFailure",
    "PollTimeout",
    "apoll_until",
    "must_validate",
    "poll_until",
    "validate",
]
