"""Pytest configuration shared by the harness test suite."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from loguru import logger

# Add tests directory to Python path for test helpers
_tests_path = Path(__file__).parent
if str(_tests_path) not in sys.path:
    sys.path.insert(0, str(_tests_path))

from helpers.federation import TEST_CONFIG  # noqa: E402


@pytest.fixture
def config():
    return TEST_CONFIG


@pytest.fixture
def log_messages():
    """Capture loguru messages emitted during a test."""
    messages: list[str] = []
    sink_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    logger.remove(sink_id)
