"""Environment-driven configuration for the harness."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_HOST_MAPPED_ADDRESS = "host.docker.internal"
DEFAULT_SYNC_UNTIL_TIMEOUT = 5.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_KEY_VALIDITY = 24 * 60 * 60.0


def _env_flag(name: str, default: bool = False) -> bool:
    """Parse truthy/falsey environment flags."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_seconds(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class HarnessConfig:
    """Settings shared by protocol clients and peer servers.

    Attributes:
        debug: Log every request and response made by protocol clients.
        host_mapped_address: Hostname containers use to reach this process.
        sync_until_timeout: Seconds a polling call waits before failing the test.
        request_timeout: Timeout applied to each HTTP request.
        key_validity: Seconds a served signing key document stays valid.
    """

    debug: bool = False
    host_mapped_address: str = DEFAULT_HOST_MAPPED_ADDRESS
    sync_until_timeout: float = DEFAULT_SYNC_UNTIL_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    key_validity: float = DEFAULT_KEY_VALIDITY

    @classmethod
    def from_env(cls) -> "HarnessConfig":
        return cls(
            debug=_env_flag("FEDHARNESS_DEBUG"),
            host_mapped_address=os.getenv(
                "FEDHARNESS_HOST_MAPPED_ADDRESS", DEFAULT_HOST_MAPPED_ADDRESS
            ),
            sync_until_timeout=_env_seconds(
                "FEDHARNESS_SYNC_UNTIL_TIMEOUT", DEFAULT_SYNC_UNTIL_TIMEOUT
            ),
            request_timeout=_env_seconds(
                "FEDHARNESS_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT
            ),
            key_validity=_env_seconds("FEDHARNESS_KEY_VALIDITY", DEFAULT_KEY_VALIDITY),
        )
