"""Opt-in protocol handlers for :class:`PeerServer`.

Each function here returns an option to pass to ``PeerServer(...)``. An
option registers its routes at most once per server, however many times it
is applied.

Request handling is split in two: the async endpoint reads the raw request,
then signature verification and room work run on a worker thread.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, TypeVar

from fastapi import APIRouter, Request
from loguru import logger
from starlette.concurrency import run_in_threadpool

from fedharness.federation.errors import ProtocolError
from fedharness.federation.events import (
    MEMBER,
    EventBuilder,
    EventParseError,
    parse_untrusted_event,
    state_needed_for_builder,
)
from fedharness.federation.server import Option, PeerServer
from fedharness.federation.signing import FederationRequest, now_ms

T = TypeVar("T")


class _RawRequest:
    """The parts of an inbound request needed to verify its signature."""

    def __init__(self, method: str, uri: str, authorization: Optional[str], body: bytes):
        self.method = method
        self.uri = uri
        self.authorization = authorization
        self.body = body


def _request_uri(request: Request) -> str:
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        path = request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


async def _read_request(request: Request) -> _RawRequest:
    return _RawRequest(
        method=request.method,
        uri=_request_uri(request),
        authorization=request.headers.get("Authorization"),
        body=await request.body(),
    )


async def _in_worker(name: str, fn: Callable[..., T], *args: Any) -> T:
    """Run ``fn`` on a worker thread, turning unexpected errors into 500s."""
    try:
        return await run_in_threadpool(fn, *args)
    except ProtocolError as exc:
        logger.warning("{} rejected request: {}", name, exc)
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("{} failed", name)
        raise ProtocolError.unknown(f"{name}: {exc}") from exc


def _verify(server: PeerServer, raw: _RawRequest) -> FederationRequest:
    return server.verify(raw.method, raw.uri, raw.authorization, raw.body)


# ----------------------------------------------------------------------
# Key serving
# ----------------------------------------------------------------------


def handle_key_requests() -> Option:
    """Serve this server's signing key on ``/_matrix/key/v2/server``."""

    def option(server: PeerServer) -> None:
        if not server.enable_handler("key_requests"):
            return

        def serve_keys(key_id: Optional[str] = None) -> Dict[str, Any]:
            valid_until_ts = now_ms() + int(server.config.key_validity * 1000)
            try:
                return server.identity.key_document(valid_until_ts)
            except (TypeError, ValueError) as exc:
                raise ProtocolError.unknown(f"HandleKeyRequests cannot sign json: {exc}") from exc

        router = APIRouter(prefix="/_matrix/key/v2")
        router.add_api_route("/server", serve_keys, methods=["GET"])
        router.add_api_route("/server/", serve_keys, methods=["GET"])
        router.add_api_route("/server/{key_id}", serve_keys, methods=["GET"])
        server.app.include_router(router)

    return option


# ----------------------------------------------------------------------
# Join handshake
# ----------------------------------------------------------------------


def _make_join(
    server: PeerServer, raw: _RawRequest, room_id: str, user_id: str, versions: List[str]
) -> Dict[str, Any]:
    _verify(server, raw)

    room = server.room(room_id)
    if room is None:
        raise ProtocolError.not_found(
            f"HandleMakeSendJoinRequests make_join unexpected room ID: {room_id}"
        )
    if versions and room.version not in versions:
        raise ProtocolError.incompatible_room_version(room.version)

    with room.lock:
        latest = room.latest_event
        if latest is None:
            raise ProtocolError.unknown(f"make_join: room {room_id} has no events")
        try:
            builder = EventBuilder(
                sender=user_id,
                room_id=room_id,
                type=MEMBER,
                state_key=user_id,
                content={"membership": "join"},
                prev_events=[latest.event_id],
                depth=latest.depth + 1,
            )
        except ValueError as exc:
            raise ProtocolError.unknown(
                f"HandleMakeSendJoinRequests make_join cannot set membership content: {exc}"
            ) from exc
        builder.auth_events = room.auth_events(state_needed_for_builder(builder))

    return {"event": builder.to_template(), "room_version": room.version}


def _send_join(
    server: PeerServer, raw: _RawRequest, room_id: str, event_id: str
) -> Dict[str, Any]:
    fed_request = _verify(server, raw)

    room = server.room(room_id)
    if room is None:
        raise ProtocolError.not_found(
            f"HandleMakeSendJoinRequests send_join unexpected room ID: {room_id}"
        )
    if fed_request.content is None:
        raise ProtocolError.bad_json("send_join requires an event body")

    try:
        event = parse_untrusted_event(fed_request.content, room.version)
    except EventParseError as exc:
        logger.warning("send_join from {} sent an invalid event: {}", fed_request.origin, exc)
        raise ProtocolError.bad_json(
            f"HandleMakeSendJoinRequests send_join cannot parse event JSON: {exc}", status=500
        ) from exc

    if event.room_id != room_id:
        raise ProtocolError.bad_json(f"event is for room {event.room_id}, not {room_id}")
    if event.event_id != event_id:
        raise ProtocolError.bad_json(f"event ID is {event.event_id}, not {event_id}")
    if event.type != MEMBER or event.membership != "join" or event.state_key != event.sender:
        raise ProtocolError.bad_json("send_join event must be a join for its sender")

    # state and auth_chain must describe the room as of this append
    with room.lock:
        room.add_event(event)
        auth_chain = room.auth_chain()
        state = room.all_current_state()

    return {
        "origin": server.server_name,
        "auth_chain": [e.to_pdu() for e in auth_chain],
        "state": [e.to_pdu() for e in state],
    }


def handle_make_send_join_requests() -> Option:
    """Process make_join and send_join for rooms created on this server.

    No checks are made as to whether the join is allowed.
    """

    def option(server: PeerServer) -> None:
        if not server.enable_handler("make_send_join"):
            return

        router = APIRouter(prefix="/_matrix/federation")

        @router.get("/v1/make_join/{room_id}/{user_id}")
        async def make_join(room_id: str, user_id: str, request: Request):
            raw = await _read_request(request)
            versions = request.query_params.getlist("ver")
            return await _in_worker("make_join", _make_join, server, raw, room_id, user_id, versions)

        @router.put("/v2/send_join/{room_id}/{event_id:path}")
        async def send_join_v2(room_id: str, event_id: str, request: Request):
            raw = await _read_request(request)
            return await _in_worker("send_join", _send_join, server, raw, room_id, event_id)

        @router.put("/v1/send_join/{room_id}/{event_id:path}")
        async def send_join_v1(room_id: str, event_id: str, request: Request):
            raw = await _read_request(request)
            response = await _in_worker("send_join", _send_join, server, raw, room_id, event_id)
            return [200, response]

        server.app.include_router(router)

    return option


# ----------------------------------------------------------------------
# Directory
# ----------------------------------------------------------------------


def _query_directory(server: PeerServer, raw: _RawRequest, alias: Optional[str]) -> Dict[str, Any]:
    _verify(server, raw)
    room_id = server.resolve_alias(alias) if alias else None
    if room_id is None:
        raise ProtocolError.not_found("Room alias not found.")
    return {"room_id": room_id, "servers": [server.server_name]}


def handle_directory_lookups() -> Option:
    """Resolve aliases registered with :meth:`PeerServer.make_room_alias`."""

    def option(server: PeerServer) -> None:
        if not server.enable_handler("directory"):
            return

        router = APIRouter(prefix="/_matrix/federation")

        @router.get("/v1/query/directory")
        async def query_directory(request: Request):
            raw = await _read_request(request)
            alias = request.query_params.get("room_alias")
            return await _in_worker("query_directory", _query_directory, server, raw, alias)

        server.app.include_router(router)

    return option
