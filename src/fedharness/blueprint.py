"""Declarative deployment blueprints.

A blueprint names the homeservers to provision and, for each one, the users,
rooms and events to seed it with. Identifiers may be written in short form
(``@alice``, ``alice``) and are qualified with the owning homeserver's name by
:func:`validate`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from fedharness.errors import HarnessFailure

USER_SIGIL = "@"
DOMAIN_SEPARATOR = ":"
MEMBER_EVENT_TYPE = "m.room.member"


class BlueprintError(ValueError):
    """Raised when a blueprint fails validation."""


class AccountData(BaseModel):
    type: str
    value: Dict[str, Any] = Field(default_factory=dict)


class User(BaseModel):
    """A user local to exactly one homeserver.

    Before validation ``localpart`` must carry the ``@`` sigil and no domain.
    After validation the sigil has been stripped.
    """

    localpart: str
    display_name: str = ""
    avatar_url: str = ""
    account_data: List[AccountData] = Field(default_factory=list)


class Event(BaseModel):
    type: str
    sender: str
    state_key: Optional[str] = None
    content: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_state(self) -> bool:
        return self.state_key is not None


class Room(BaseModel):
    """A room to create on a homeserver.

    ``ref`` links rooms across homeservers in the same blueprint; it is not a
    protocol room ID. A room without a ``creator`` must refer to one created
    elsewhere through ``ref``.
    """

    ref: str = ""
    creator: str = ""
    create_room: Dict[str, Any] = Field(default_factory=dict)
    events: List[Event] = Field(default_factory=list)


class Homeserver(BaseModel):
    name: str
    users: List[User] = Field(default_factory=list)
    rooms: List[Room] = Field(default_factory=list)


class Blueprint(BaseModel):
    name: str
    homeservers: List[Homeserver] = Field(default_factory=list)


def validate(bp: Blueprint) -> Blueprint:
    """Return a validated, normalized copy of ``bp``.

    User localparts lose their ``@`` sigil, and room creators, event senders
    and membership state keys are qualified with the homeserver name. The
    input is left untouched.

    Raises:
        BlueprintError: if any part of the blueprint is malformed.
    """
    if not bp.name:
        raise BlueprintError("Blueprint must have a Name")

    normalized = bp.model_copy(deep=True)
    for hs in normalized.homeservers:
        for user in hs.users:
            user.localpart = normalise_localpart(user.localpart, hs.name)
        hs.rooms = [normalise_room(hs.name, room) for room in hs.rooms]
    return normalized


def must_validate(bp: Blueprint) -> Blueprint:
    """Validate ``bp`` or fail the current test."""
    try:
        return validate(bp)
    except BlueprintError as exc:
        raise HarnessFailure(f"MustValidate: {exc}") from exc


def normalise_localpart(localpart: str, hs_name: str) -> str:
    if not localpart.startswith(USER_SIGIL):
        raise BlueprintError(
            f"HS {hs_name} user localpart '{localpart}' must start with '{USER_SIGIL}'"
        )
    if DOMAIN_SEPARATOR in localpart:
        raise BlueprintError(
            f"HS {hs_name} user localpart '{localpart}' must not contain a domain"
        )
    return localpart[len(USER_SIGIL):]


def normalise_room(hs_name: str, room: Room) -> Room:
    """Return a copy of ``room`` with every user identifier qualified."""
    room = room.model_copy(deep=True)
    if room.creator:
        room.creator = normalise_user(room.creator, hs_name)
    elif not room.ref:
        raise BlueprintError(f"{hs_name} : room must have either a Ref or a Creator")

    for event in room.events:
        event.sender = normalise_user(event.sender, hs_name)
        if event.state_key is not None and event.type == MEMBER_EVENT_TYPE:
            event.state_key = normalise_user(event.state_key, hs_name)
    return room


def normalise_user(user: str, hs_name: str) -> str:
    """Qualify ``user`` with ``hs_name`` unless it already names a domain.

    An identifier that already has a domain must belong to ``hs_name``.
    """
    if DOMAIN_SEPARATOR in user:
        if user.endswith(f"{DOMAIN_SEPARATOR}{hs_name}"):
            return user
        raise BlueprintError(
            f"HS '{hs_name}' user '{user}' must end with "
            f"'{DOMAIN_SEPARATOR}{hs_name}' or have no domain"
        )
    return f"{user}{DOMAIN_SEPARATOR}{hs_name}"


def user_id(localpart: str, hs_name: str) -> str:
    """Rebuild a full user ID from a normalized localpart."""
    return f"{USER_SIGIL}{localpart}{DOMAIN_SEPARATOR}{hs_name}"
