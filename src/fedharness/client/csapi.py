"""Client-server API client bound to one user on one homeserver."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx
from loguru import logger

from fedharness.blueprint import Event
from fedharness.client.json_utils import (
    get_json_field_str,
    get_json_path,
    json_path_escape,
    parse_json,
)
from fedharness.client.logged import new_logged_client
from fedharness.config import DEFAULT_SYNC_UNTIL_TIMEOUT
from fedharness.errors import HarnessFailure, ResponseStatusError
from fedharness.polling import poll_until

CLIENT_API_PREFIX = ("_matrix", "client", "v3")
SYNC_LONG_POLL_MS = 1000

Query = Mapping[str, Any]


class ClientServerAPI:
    """Issues JSON requests as one user and waits for results to sync.

    Methods named ``must_*`` or that return identifiers from the response
    fail the current test (by raising a :class:`HarnessFailure`) when the
    server does not answer with a 2xx status.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str = "",
        access_token: str = "",
        *,
        http_client: Optional[httpx.Client] = None,
        sync_until_timeout: float = DEFAULT_SYNC_UNTIL_TIMEOUT,
        debug: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.access_token = access_token
        self.client = http_client or new_logged_client()
        self.sync_until_timeout = sync_until_timeout
        self.debug = debug
        self._txn_id = 0

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "ClientServerAPI":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Room operations
    # ------------------------------------------------------------------
    def create_room(self, creation_content: Optional[Mapping[str, Any]] = None) -> str:
        """Create a room and return its ID."""
        response = self.must_do("POST", [*CLIENT_API_PREFIX, "createRoom"], creation_content or {})
        return get_json_field_str(parse_json(response), "room_id")

    def join_room(self, room_id_or_alias: str) -> str:
        """Join a room by ID or alias and return the room ID."""
        response = self.must_do("POST", [*CLIENT_API_PREFIX, "join", room_id_or_alias], {})
        if room_id_or_alias.startswith("!"):
            return room_id_or_alias
        # joining by alias: the server tells us the room ID
        return get_json_field_str(parse_json(response), "room_id")

    def send_event_synced(self, room_id: str, event: Event) -> str:
        """Send ``event`` and wait until it comes down sync.

        Returns:
            The event ID assigned by the server.
        """
        self._txn_id += 1
        if event.state_key is not None:
            paths = [*CLIENT_API_PREFIX, "rooms", room_id, "state", event.type, event.state_key]
        else:
            paths = [*CLIENT_API_PREFIX, "rooms", room_id, "send", event.type, str(self._txn_id)]
        response = self.must_do("PUT", paths, event.content)
        event_id = get_json_field_str(parse_json(response), "event_id")
        logger.info("send_event_synced waiting for event ID {}", event_id)
        self.sync_until_timeline_has(room_id, lambda ev: ev.get("event_id") == event_id)
        return event_id

    # ------------------------------------------------------------------
    # Sync polling
    # ------------------------------------------------------------------
    def sync_until_timeline_has(
        self, room_id: str, check: Callable[[Dict[str, Any]], bool]
    ) -> Dict[str, Any]:
        """Call /sync until ``check`` accepts an event in the room's timeline.

        Fails the test after ``sync_until_timeout`` seconds.
        """
        key = f"rooms.join.{json_path_escape(room_id)}.timeline.events"
        return self.sync_until(key, check)

    def sync_until(self, key: str, check: Callable[[Any], bool]) -> Any:
        """Call /sync until ``check`` accepts an element of the array at ``key``."""

        def fetch(since: Optional[str]) -> Tuple[List[Any], Optional[str]]:
            query: Dict[str, Any] = {"timeout": str(SYNC_LONG_POLL_MS)}
            if since:
                query["since"] = since
            try:
                response = self.do_with_auth("GET", [*CLIENT_API_PREFIX, "sync"], None, query)
            except httpx.HTTPError as exc:
                raise HarnessFailure(f"sync_until since={since} error: {exc}") from exc
            if not 200 <= response.status_code < 300:
                raise ResponseStatusError(
                    "GET", str(response.request.url), response.status_code, response.text
                )
            body = parse_json(response)
            next_batch = get_json_field_str(body, "next_batch")
            events = get_json_path(body, key)
            return (events if isinstance(events, list) else []), next_batch

        def logged_check(event: Any) -> bool:
            try:
                return check(event)
            except AssertionError:
                logger.error("failing event {}", event)
                raise

        return poll_until(
            fetch,
            logged_check,
            timeout=self.sync_until_timeout,
            description=f"sync_until {key}",
        )

    # ------------------------------------------------------------------
    # Raw requests
    # ------------------------------------------------------------------
    def must_do(
        self,
        method: str,
        paths: Sequence[str],
        json_body: Any = None,
        query: Optional[Query] = None,
    ) -> httpx.Response:
        """Like :meth:`do_with_auth`, but fails the test unless the status is 2xx."""
        try:
            response = self.do_with_auth(method, paths, json_body, query)
        except httpx.HTTPError as exc:
            raise HarnessFailure(f"must_do {method} {'/'.join(paths)} error: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise ResponseStatusError(
                method, str(response.request.url), response.status_code, response.text
            )
        return response

    def do_with_auth(
        self,
        method: str,
        paths: Sequence[str],
        json_body: Any = None,
        query: Optional[Query] = None,
    ) -> httpx.Response:
        """Make a request authenticated with this user's access token."""
        headers = {"Authorization": f"Bearer {self.access_token}"}
        return self.do(method, paths, json_body, query, headers=headers)

    def do(
        self,
        method: str,
        paths: Sequence[str],
        json_body: Any = None,
        query: Optional[Query] = None,
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        """Make a JSON request. Each path segment is URL-escaped.

        Raises:
            httpx.HTTPError: on transport failure. Nothing is retried.
        """
        url = self.base_url + "/" + "/".join(quote(str(p), safe="") for p in paths)
        if self.debug:
            logger.info("Making {} request to {} query={}", method, url, dict(query or {}))
            logger.info("Request body: {}", json_body)
        response = self.client.request(
            method,
            url,
            params=dict(query) if query else None,
            json=json_body,
            headers={"Content-Type": "application/json", **(headers or {})},
        )
        if self.debug:
            logger.info(
                "Response {} {}: {}", response.status_code, response.reason_phrase, response.text
            )
        return response
