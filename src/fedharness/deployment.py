"""The interface the harness needs from a provisioned deployment."""

from __future__ import annotations

from typing import Mapping, Optional, Protocol

from fedharness.client.csapi import ClientServerAPI
from fedharness.client.logged import new_logged_client
from fedharness.config import HarnessConfig
from fedharness.errors import HarnessFailure


class Deployment(Protocol):
    """A set of running homeservers, keyed by server name."""

    def client(self, server_name: str, user_id: str) -> ClientServerAPI:
        """Return a client for ``user_id`` on ``server_name``."""
        ...

    def base_url(self, server_name: str) -> str:
        """Return the URL this process reaches ``server_name`` on."""
        ...


class StaticDeployment:
    """A deployment whose servers are already running at known URLs.

    Args:
        base_urls: Server name to base URL.
        access_tokens: User ID to access token. Users without a token get an
            unauthenticated client.
        config: Harness settings applied to every client.
    """

    def __init__(
        self,
        base_urls: Mapping[str, str],
        access_tokens: Optional[Mapping[str, str]] = None,
        config: Optional[HarnessConfig] = None,
    ) -> None:
        self._base_urls = dict(base_urls)
        self._access_tokens = dict(access_tokens or {})
        self.config = config or HarnessConfig.from_env()

    def base_url(self, server_name: str) -> str:
        try:
            return self._base_urls[server_name]
        except KeyError:
            raise HarnessFailure(
                f"Deployment has no server named {server_name!r}; "
                f"known: {sorted(self._base_urls)}"
            ) from None

    def client(self, server_name: str, user_id: str) -> ClientServerAPI:
        return ClientServerAPI(
            self.base_url(server_name),
            user_id,
            self._access_tokens.get(user_id, ""),
            http_client=new_logged_client(timeout=self.config.request_timeout),
            sync_until_timeout=self.config.sync_until_timeout,
            debug=self.config.debug,
        )
