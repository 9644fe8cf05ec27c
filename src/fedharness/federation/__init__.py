"""Impersonation of a remote federation peer."""

from fedharness.federation.errors import ProtocolError
from fedharness.federation.events import (
    DEFAULT_ROOM_VERSION,
    Event,
    EventBuilder,
    EventParseError,
    parse_untrusted_event,
    state_needed_for,
)
from fedharness.federation.handlers import (
    handle_directory_lookups,
    handle_key_requests,
    handle_make_send_join_requests,
)
from fedharness.federation.room import ServerRoom
from fedharness.federation.server import PeerServer, federation_path
from fedharness.federation.signing import (
    KeyRing,
    SigningIdentity,
    sign_request,
    verify_json,
    verify_request,
    verify_server_keys,
)

__all__ = [
    "DEFAULT_ROOM_VERSION",
    "Event",
    "EventBuilder",
    "EventParseError",
    "KeyRing",
    "PeerServer",
    "ProtocolError",
    "ServerRoom",
    "SigningIdentity",
    "federation_path",
    "handle_directory_lookups",
    "handle_key_requests",
    "handle_make_send_join_requests",
    "parse_untrusted_event",
    "sign_request",
    "state_needed_for",
    "verify_json",
    "verify_request",
    "verify_server_keys",
]
