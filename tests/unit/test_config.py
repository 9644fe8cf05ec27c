"""Tests for environment-driven configuration."""

import pytest

from fedharness.config import (
    DEFAULT_HOST_MAPPED_ADDRESS,
    DEFAULT_KEY_VALIDITY,
    DEFAULT_SYNC_UNTIL_TIMEOUT,
    HarnessConfig,
)

ENV_VARS = (
    "FEDHARNESS_DEBUG",
    "FEDHARNESS_HOST_MAPPED_ADDRESS",
    "FEDHARNESS_SYNC_UNTIL_TIMEOUT",
    "FEDHARNESS_REQUEST_TIMEOUT",
    "FEDHARNESS_KEY_VALIDITY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = HarnessConfig.from_env()
    assert config.debug is False
    assert config.host_mapped_address == DEFAULT_HOST_MAPPED_ADDRESS
    assert config.sync_until_timeout == DEFAULT_SYNC_UNTIL_TIMEOUT
    assert config.key_validity == DEFAULT_KEY_VALIDITY


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("FEDHARNESS_DEBUG", "yes")
    monkeypatch.setenv("FEDHARNESS_HOST_MAPPED_ADDRESS", "172.17.0.1")
    monkeypatch.setenv("FEDHARNESS_SYNC_UNTIL_TIMEOUT", "2.5")
    monkeypatch.setenv("FEDHARNESS_REQUEST_TIMEOUT", "7")

    config = HarnessConfig.from_env()

    assert config.debug is True
    assert config.host_mapped_address == "172.17.0.1"
    assert config.sync_until_timeout == 2.5
    assert config.request_timeout == 7.0


@pytest.mark.parametrize("value", ["0", "-1", "soon"])
def test_rejects_bad_durations(monkeypatch, value):
    monkeypatch.setenv("FEDHARNESS_SYNC_UNTIL_TIMEOUT", value)
    with pytest.raises(ValueError, match="FEDHARNESS_SYNC_UNTIL_TIMEOUT"):
        HarnessConfig.from_env()


def test_unrecognized_flag_is_false(monkeypatch):
    monkeypatch.setenv("FEDHARNESS_DEBUG", "maybe")
    assert HarnessConfig.from_env().debug is False
