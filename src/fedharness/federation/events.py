"""Federation events (PDUs) for the room versions the peer server speaks.

Only room versions 3 to 6 are supported. In all of them an event's ID is
derived from its reference hash rather than carried in the event itself.
"""

from __future__ import annotations

import copy
import hashlib
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

from fedharness.federation.encoding import canonical_json, decode_base64, encode_base64
from fedharness.federation.signing import SigningIdentity, now_ms

DEFAULT_ROOM_VERSION = "5"
SUPPORTED_ROOM_VERSIONS = ("3", "4", "5", "6")
MAX_EVENT_SIZE = 65536

CREATE = "m.room.create"
MEMBER = "m.room.member"
POWER_LEVELS = "m.room.power_levels"
JOIN_RULES = "m.room.join_rules"
THIRD_PARTY_INVITE = "m.room.third_party_invite"
HISTORY_VISIBILITY = "m.room.history_visibility"
ALIASES = "m.room.aliases"

StateKeyTuple = Tuple[str, str]

_REDACTION_KEEP_TOP_LEVEL = frozenset(
    {
        "event_id",
        "type",
        "room_id",
        "sender",
        "state_key",
        "content",
        "hashes",
        "signatures",
        "depth",
        "prev_events",
        "prev_state",
        "auth_events",
        "origin",
        "origin_server_ts",
        "membership",
    }
)

_REDACTION_KEEP_CONTENT = {
    MEMBER: ("membership",),
    CREATE: ("creator",),
    JOIN_RULES: ("join_rule",),
    POWER_LEVELS: (
        "ban",
        "events",
        "events_default",
        "kick",
        "redact",
        "state_default",
        "users",
        "users_default",
    ),
    HISTORY_VISIBILITY: ("history_visibility",),
}


class EventParseError(ValueError):
    """Raised when untrusted event JSON is not a valid event."""


def check_room_version(room_version: str) -> None:
    if room_version not in SUPPORTED_ROOM_VERSIONS:
        raise EventParseError(f"unsupported room version {room_version!r}")


def redact(pdu: Mapping[str, Any], room_version: str) -> Dict[str, Any]:
    """Strip ``pdu`` down to the keys that survive redaction."""
    redacted = {k: copy.deepcopy(v) for k, v in pdu.items() if k in _REDACTION_KEEP_TOP_LEVEL}
    keep = _REDACTION_KEEP_CONTENT.get(pdu.get("type"), ())
    if pdu.get("type") == ALIASES and room_version in ("3", "4", "5"):
        keep = ("aliases",)
    content = pdu.get("content") or {}
    redacted["content"] = {k: copy.deepcopy(content[k]) for k in keep if k in content}
    return redacted


def content_hash(pdu: Mapping[str, Any]) -> bytes:
    hashable = {k: v for k, v in pdu.items() if k not in ("unsigned", "signatures", "hashes")}
    return hashlib.sha256(canonical_json(hashable)).digest()


def reference_hash(pdu: Mapping[str, Any], room_version: str) -> bytes:
    redacted = redact(pdu, room_version)
    redacted.pop("signatures", None)
    redacted.pop("unsigned", None)
    return hashlib.sha256(canonical_json(redacted)).digest()


def compute_event_id(pdu: Mapping[str, Any], room_version: str) -> str:
    check_room_version(room_version)
    return "$" + encode_base64(
        reference_hash(pdu, room_version), urlsafe=room_version != "3"
    )


class Event(BaseModel):
    """A parsed federation event.

    The exact JSON the event was built or received as is kept alongside the
    parsed fields, so hashes and the event ID are always computed over the
    original bytes rather than a re-serialization.
    """

    model_config = ConfigDict(extra="allow", strict=True)

    room_id: str
    sender: str
    type: str
    state_key: Optional[str] = None
    content: Dict[str, Any]
    prev_events: List[str]
    auth_events: List[str]
    depth: int = Field(ge=0)
    origin_server_ts: int
    origin: Optional[str] = None
    hashes: Dict[str, str] = Field(default_factory=dict)
    signatures: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    _pdu: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _room_version: str = PrivateAttr(default=DEFAULT_ROOM_VERSION)
    _event_id: str = PrivateAttr(default="")

    @classmethod
    def from_pdu(cls, pdu: Mapping[str, Any], room_version: str) -> "Event":
        """Parse ``pdu`` and derive its event ID.

        Raises:
            EventParseError: if ``pdu`` does not have the shape of an event.
        """
        check_room_version(room_version)
        try:
            event = cls.model_validate(dict(pdu), strict=True)
        except ValidationError as exc:
            raise EventParseError(f"invalid event: {exc}") from exc
        event._pdu = copy.deepcopy(dict(pdu))
        event._room_version = room_version
        event._event_id = compute_event_id(event._pdu, room_version)
        return event

    @property
    def event_id(self) -> str:
        return self._event_id

    @property
    def room_version(self) -> str:
        return self._room_version

    @property
    def is_state(self) -> bool:
        return self.state_key is not None

    @property
    def state_tuple(self) -> Optional[StateKeyTuple]:
        if self.state_key is None:
            return None
        return (self.type, self.state_key)

    @property
    def membership(self) -> Optional[str]:
        if self.type != MEMBER:
            return None
        membership = self.content.get("membership")
        return membership if isinstance(membership, str) else None

    def to_pdu(self) -> Dict[str, Any]:
        """Return the event's wire JSON."""
        return copy.deepcopy(self._pdu)


class EventBuilder(BaseModel):
    """A prospective event that has not been hashed or signed yet."""

    sender: str
    room_id: str
    type: str
    state_key: Optional[str] = None
    content: Dict[str, Any] = Field(default_factory=dict)
    prev_events: List[str] = Field(default_factory=list)
    auth_events: List[str] = Field(default_factory=list)
    depth: int = 0

    def to_template(self) -> Dict[str, Any]:
        """Return the unsigned event JSON handed out by make_join."""
        return self.model_dump(exclude_none=True)

    def build(
        self,
        identity: SigningIdentity,
        room_version: str,
        origin_server_ts: Optional[int] = None,
    ) -> Event:
        """Hash and sign the event as ``identity``'s server."""
        check_room_version(room_version)
        pdu = self.to_template()
        pdu["origin"] = identity.server_name
        pdu["origin_server_ts"] = origin_server_ts if origin_server_ts is not None else now_ms()
        return sign_event(pdu, identity, room_version)


def sign_event(
    pdu: Mapping[str, Any], identity: SigningIdentity, room_version: str
) -> Event:
    """Add the content hash and ``identity``'s signature to ``pdu``."""
    pdu = copy.deepcopy(dict(pdu))
    pdu.pop("unsigned", None)
    pdu["hashes"] = {"sha256": encode_base64(content_hash(pdu))}
    signed = identity.sign_json(redact(pdu, room_version))
    pdu["signatures"] = signed["signatures"]
    return Event.from_pdu(pdu, room_version)


def state_needed_for(
    event_type: str,
    state_key: Optional[str],
    sender: str,
    content: Mapping[str, Any],
) -> List[StateKeyTuple]:
    """Return the state an event of this shape must cite as auth events.

    A create event needs nothing. Every other event needs the create event,
    the power levels and its sender's membership. Membership events also need
    the target's membership, plus the join rules for joins, invites and knocks
    and the third-party invite for invites that redeem one.
    """
    if event_type == CREATE:
        return []

    needed: List[StateKeyTuple] = [(CREATE, ""), (POWER_LEVELS, ""), (MEMBER, sender)]
    if event_type == MEMBER and state_key is not None:
        needed.append((MEMBER, state_key))
        membership = content.get("membership")
        if membership in ("join", "invite", "knock"):
            needed.append((JOIN_RULES, ""))
        if membership == "invite":
            third_party = content.get("third_party_invite")
            if isinstance(third_party, Mapping):
                token = (third_party.get("signed") or {}).get("token")
                if isinstance(token, str):
                    needed.append((THIRD_PARTY_INVITE, token))

    seen = set()
    ordered: List[StateKeyTuple] = []
    for key in needed:
        if key not in seen:
            seen.add(key)
            ordered.append(key)
    return ordered


def state_needed_for_builder(builder: EventBuilder) -> List[StateKeyTuple]:
    return state_needed_for(builder.type, builder.state_key, builder.sender, builder.content)


def parse_untrusted_event(
    raw: Union[bytes, str, Mapping[str, Any]], room_version: str
) -> Event:
    """Parse event JSON received from a remote server.

    Checks the overall size, the structure of every required field, the shape
    of the identifiers and the content hash. Signatures are not checked here.

    Raises:
        EventParseError: if the input is not a valid event for ``room_version``.
    """
    check_room_version(room_version)
    if isinstance(raw, (bytes, str)):
        if len(raw) > MAX_EVENT_SIZE:
            raise EventParseError(f"event is larger than {MAX_EVENT_SIZE} bytes")
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise EventParseError(f"event is not valid JSON: {exc}") from exc
    else:
        data = raw
        if len(canonical_json(data)) > MAX_EVENT_SIZE:
            raise EventParseError(f"event is larger than {MAX_EVENT_SIZE} bytes")

    if not isinstance(data, dict):
        raise EventParseError("event must be a JSON object")
    if "event_id" in data:
        raise EventParseError(f"room version {room_version} events must not carry an event_id")

    event = Event.from_pdu(data, room_version)

    if not event.room_id.startswith("!"):
        raise EventParseError(f"malformed room ID {event.room_id!r}")
    if not event.sender.startswith("@") or ":" not in event.sender:
        raise EventParseError(f"malformed sender {event.sender!r}")
    for event_id in _iter_ids(event.prev_events, event.auth_events):
        if not event_id.startswith("$"):
            raise EventParseError(f"malformed event reference {event_id!r}")

    expected = event.hashes.get("sha256")
    if expected is None:
        raise EventParseError("event has no sha256 content hash")
    try:
        matches = decode_base64(expected) == content_hash(data)
    except ValueError as exc:
        raise EventParseError("event content hash is not valid base64") from exc
    if not matches:
        raise EventParseError("event content hash does not match its content")
    return event


def _iter_ids(*groups: Iterable[str]) -> Iterable[str]:
    for group in groups:
        yield from group
