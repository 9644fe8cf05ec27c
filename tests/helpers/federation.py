"""Builders shared by the federation tests."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fedharness.config import HarnessConfig
from fedharness.federation.encoding import canonical_json
from fedharness.federation.events import Event, EventBuilder, state_needed_for_builder
from fedharness.federation.room import ServerRoom
from fedharness.federation.server import PeerServer
from fedharness.federation.signing import SigningIdentity, sign_request

TEST_CONFIG = HarnessConfig(host_mapped_address="localhost", sync_until_timeout=1.0)
ORIGIN = "origin.test"


def make_peer(*options) -> PeerServer:
    return PeerServer(*options, config=TEST_CONFIG)


def trusted_origin(peer: PeerServer, server_name: str = ORIGIN) -> SigningIdentity:
    """Create a remote server identity whose key ``peer`` already trusts."""
    identity = SigningIdentity.generate(server_name)
    peer.key_ring.add_identity(identity)
    return identity


def signed_headers(
    identity: SigningIdentity,
    method: str,
    uri: str,
    destination: str,
    content: Any = None,
) -> Dict[str, str]:
    headers = {"Authorization": sign_request(identity, method, uri, destination, content)}
    if content is not None:
        headers["Content-Type"] = "application/json"
    return headers


def json_bytes(content: Any) -> bytes:
    return canonical_json(content)


def append_event(
    room: ServerRoom,
    identity: SigningIdentity,
    event_type: str,
    sender: str,
    content: Optional[Mapping[str, Any]] = None,
    state_key: Optional[str] = None,
) -> Event:
    """Sign an event on top of ``room``'s tail and append it."""
    with room.lock:
        latest = room.latest_event
        builder = EventBuilder(
            sender=sender,
            room_id=room.room_id,
            type=event_type,
            state_key=state_key,
            content=dict(content or {}),
            prev_events=[latest.event_id] if latest else [],
            depth=room.depth + 1,
        )
        builder.auth_events = room.auth_events(state_needed_for_builder(builder))
        event = builder.build(identity, room.version)
        room.add_event(event)
    return event
