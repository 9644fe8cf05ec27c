"""
Peer Server Listener Tests

Starts peer servers on real local ports and talks to them over HTTP.

Usage:
    uv run pytest tests/integration/test_peer_server_listen.py -v -m integration
"""

import httpx
import pytest

from fedharness.federation.handlers import (
    handle_directory_lookups,
    handle_key_requests,
    handle_make_send_join_requests,
)
from fedharness.federation.signing import KeyRing, verify_server_keys

from helpers.federation import make_peer

pytestmark = pytest.mark.integration


@pytest.fixture
def listening_peer():
    peer = make_peer(handle_key_requests(), handle_directory_lookups())
    cancel = peer.listen()
    yield peer
    cancel()


def test_serves_keys_over_http(listening_peer):
    response = httpx.get(f"{listening_peer.base_url}/_matrix/key/v2/server", timeout=5.0)

    assert response.status_code == 200
    assert listening_peer.identity.key_id in verify_server_keys(response.json())


def test_signed_request_between_peers(listening_peer):
    caller = make_peer()
    try:
        listening_peer.key_ring.add_identity(caller.identity)
        room = listening_peer.make_room(f"@creator:{listening_peer.server_name}")
        alias = f"#lobby:{listening_peer.server_name}"
        listening_peer.make_room_alias(alias, room.room_id)

        response = caller.do_federation_request(
            listening_peer.base_url,
            "GET",
            ["_matrix", "federation", "v1", "query", "directory"],
            destination=listening_peer.server_name,
            query={"room_alias": alias},
        )

        assert response.status_code == 200
        assert response.json()["room_id"] == room.room_id
    finally:
        caller.close()


def test_key_ring_fetches_from_listener(listening_peer):
    ring = KeyRing(resolver=lambda name: listening_peer.base_url)

    key = ring.verify_key(listening_peer.server_name, listening_peer.identity.key_id)

    assert bytes(key) == bytes(listening_peer.identity.verify_key)


def test_cancel_is_idempotent():
    peer = make_peer(handle_make_send_join_requests())
    cancel = peer.listen()
    base_url = peer.base_url

    cancel()
    cancel()

    with pytest.raises(httpx.TransportError):
        httpx.get(f"{base_url}/_matrix/key/v2/server", timeout=1.0)


def test_listen_twice_fails(listening_peer):
    with pytest.raises(RuntimeError, match="already listening"):
        listening_peer.listen()
