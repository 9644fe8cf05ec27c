"""A fake federation peer that a homeserver under test can talk to."""

from __future__ import annotations

import secrets
import socket
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import quote, urlencode

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from fedharness.blueprint import Event as BlueprintEvent
from fedharness.config import HarnessConfig
from fedharness.federation.encoding import canonical_json
from fedharness.federation.errors import ProtocolError
from fedharness.federation.events import (
    CREATE,
    DEFAULT_ROOM_VERSION,
    JOIN_RULES,
    MEMBER,
    POWER_LEVELS,
    Event,
    EventBuilder,
    check_room_version,
    state_needed_for_builder,
)
from fedharness.federation.room import ServerRoom
from fedharness.federation.signing import (
    FederationRequest,
    KeyRing,
    SigningIdentity,
    sign_request,
    verify_request,
)

Option = Callable[["PeerServer"], None]

STARTUP_TIMEOUT = 5.0
SHUTDOWN_TIMEOUT = 5.0


def federation_path(*segments: str) -> str:
    """Join path segments, escaping each one completely."""
    return "/" + "/".join(quote(segment, safe="") for segment in segments)


async def _protocol_error_handler(request: Request, exc: ProtocolError) -> JSONResponse:
    return JSONResponse(status_code=exc.status, content=exc.to_body())


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # unmatched paths and methods
    errcode = "M_UNRECOGNIZED" if exc.status_code in (404, 405) else "M_UNKNOWN"
    return JSONResponse(
        status_code=exc.status_code,
        content={"errcode": errcode, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("Rejecting {} {}: {}", request.method, request.url.path, exc.errors())
    error = ProtocolError.bad_json(f"Invalid request: {exc.errors()}")
    return JSONResponse(status_code=error.status, content=error.to_body())


class PeerServer:
    """An impersonated remote server.

    Nothing is served unless asked for: each option passed to the
    constructor wires up one part of the protocol (see
    :mod:`fedharness.federation.handlers`). Options are applied in order.

    The listening socket is bound at construction, so the server name
    (``<host_mapped_address>:<port>``) is known before :meth:`listen` is
    called and rooms can be created up front.
    """

    def __init__(
        self,
        *options: Option,
        config: Optional[HarnessConfig] = None,
        identity: Optional[SigningIdentity] = None,
        key_ring: Optional[KeyRing] = None,
        bind_host: str = "0.0.0.0",
        ssl_certfile: Optional[str] = None,
        ssl_keyfile: Optional[str] = None,
    ) -> None:
        self.config = config or HarnessConfig.from_env()
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind((bind_host, 0))
        self.port: int = self._socket.getsockname()[1]

        if identity is None:
            identity = SigningIdentity.generate(f"{self.config.host_mapped_address}:{self.port}")
        self.identity = identity
        self.server_name = identity.server_name
        self.key_ring = key_ring or KeyRing(timeout=self.config.request_timeout)
        self.key_ring.add_identity(identity)

        self._ssl_certfile = ssl_certfile
        self._ssl_keyfile = ssl_keyfile
        self._rooms: Dict[str, ServerRoom] = {}
        self._aliases: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._handlers: set[str] = set()
        self._room_counter = 0
        self._listening = False

        self.app = FastAPI(title=f"fedharness peer {self.server_name}")
        self.app.add_exception_handler(ProtocolError, _protocol_error_handler)
        self.app.add_exception_handler(StarletteHTTPException, _http_error_handler)
        self.app.add_exception_handler(RequestValidationError, _validation_error_handler)

        for option in options:
            option(self)

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------
    def enable_handler(self, name: str) -> bool:
        """Mark ``name`` as registered; False if it already was."""
        with self._lock:
            if name in self._handlers:
                return False
            self._handlers.add(name)
            return True

    @property
    def handlers(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._handlers)

    # ------------------------------------------------------------------
    # Rooms and aliases
    # ------------------------------------------------------------------
    def room(self, room_id: str) -> Optional[ServerRoom]:
        with self._lock:
            return self._rooms.get(room_id)

    def resolve_alias(self, alias: str) -> Optional[str]:
        with self._lock:
            return self._aliases.get(alias)

    def make_room_alias(self, alias: str, room_id: str) -> None:
        with self._lock:
            self._aliases[alias] = room_id

    def make_room(
        self,
        creator: str,
        room_version: str = DEFAULT_ROOM_VERSION,
        events: Iterable[BlueprintEvent] = (),
    ) -> ServerRoom:
        """Create a room on this server and seed its timeline.

        The room starts with a create event, the creator's join, power levels
        granting the creator 100 and a public join rule, followed by
        ``events``. Every event is signed by this server.
        """
        check_room_version(room_version)
        with self._lock:
            self._room_counter += 1
            room_id = f"!{self._room_counter}-{secrets.token_hex(4)}:{self.server_name}"
        room = ServerRoom(room_id, room_version)

        seed: List[BlueprintEvent] = [
            BlueprintEvent(
                type=CREATE,
                sender=creator,
                state_key="",
                content={"creator": creator, "room_version": room_version},
            ),
            BlueprintEvent(
                type=MEMBER, sender=creator, state_key=creator, content={"membership": "join"}
            ),
            BlueprintEvent(
                type=POWER_LEVELS,
                sender=creator,
                state_key="",
                content={
                    "ban": 50,
                    "events_default": 0,
                    "invite": 0,
                    "kick": 50,
                    "redact": 50,
                    "state_default": 50,
                    "users": {creator: 100},
                    "users_default": 0,
                },
            ),
            BlueprintEvent(
                type=JOIN_RULES, sender=creator, state_key="", content={"join_rule": "public"}
            ),
        ]
        for blueprint_event in [*seed, *events]:
            self.make_event(
                room,
                blueprint_event.type,
                blueprint_event.sender,
                blueprint_event.content,
                state_key=blueprint_event.state_key,
            )

        with self._lock:
            self._rooms[room_id] = room
        logger.info("Peer {} created room {} (version {})", self.server_name, room_id, room_version)
        return room

    def make_event(
        self,
        room: ServerRoom,
        event_type: str,
        sender: str,
        content: Mapping[str, Any],
        state_key: Optional[str] = None,
    ) -> Event:
        """Build, sign and append an event on top of ``room``'s timeline."""
        with room.lock:
            latest = room.latest_event
            builder = EventBuilder(
                sender=sender,
                room_id=room.room_id,
                type=event_type,
                state_key=state_key,
                content=dict(content),
                prev_events=[latest.event_id] if latest is not None else [],
                depth=room.depth + 1,
            )
            builder.auth_events = room.auth_events(state_needed_for_builder(builder))
            event = builder.build(self.identity, room.version)
            room.add_event(event)
        return event

    # ------------------------------------------------------------------
    # Request authentication
    # ------------------------------------------------------------------
    def verify(self, method: str, uri: str, authorization: Optional[str], body: bytes) -> FederationRequest:
        return verify_request(self.key_ring, self.server_name, method, uri, authorization, body)

    def federation_headers(
        self, method: str, uri: str, destination: str, content: Any = None
    ) -> Dict[str, str]:
        """Headers for a request signed as this server."""
        headers = {
            "Authorization": sign_request(self.identity, method, uri, destination, content)
        }
        if content is not None:
            headers["Content-Type"] = "application/json"
        return headers

    def do_federation_request(
        self,
        base_url: str,
        method: str,
        path_segments: Sequence[str],
        destination: str,
        content: Any = None,
        query: Optional[Mapping[str, Any]] = None,
    ) -> httpx.Response:
        """Send a signed federation request to ``base_url``."""
        uri = federation_path(*path_segments)
        if query:
            uri += "?" + urlencode(query, doseq=True)
        headers = self.federation_headers(method, uri, destination, content)
        body = canonical_json(content) if content is not None else None
        with httpx.Client(timeout=self.config.request_timeout, verify=False) as client:
            return client.request(method, base_url.rstrip("/") + uri, content=body, headers=headers)

    # ------------------------------------------------------------------
    # Listening
    # ------------------------------------------------------------------
    @property
    def base_url(self) -> str:
        """URL this process can reach the server on."""
        scheme = "https" if self._ssl_certfile else "http"
        return f"{scheme}://127.0.0.1:{self.port}"

    def listen(self) -> Callable[[], None]:
        """Start serving in a background thread.

        Returns:
            A function that stops the server. Calling it more than once is
            harmless.

        Raises:
            RuntimeError: if the server is already listening or fails to start.
        """
        with self._lock:
            if self._listening:
                raise RuntimeError(f"Peer server {self.server_name} is already listening")
            self._listening = True

        config = uvicorn.Config(
            self.app,
            log_level="debug" if self.config.debug else "warning",
            lifespan="off",
            ssl_certfile=self._ssl_certfile,
            ssl_keyfile=self._ssl_keyfile,
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(
            target=server.run,
            kwargs={"sockets": [self._socket]},
            name=f"peer-server-{self.port}",
            daemon=True,
        )
        thread.start()

        deadline = time.monotonic() + STARTUP_TIMEOUT
        while not server.started:
            if not thread.is_alive():
                self._abort_startup(f"Peer server {self.server_name} exited during startup")
            if time.monotonic() > deadline:
                server.should_exit = True
                thread.join(timeout=SHUTDOWN_TIMEOUT)
                self._abort_startup(
                    f"Peer server {self.server_name} did not start within {STARTUP_TIMEOUT}s"
                )
            time.sleep(0.01)
        logger.info("Peer server {} listening on port {}", self.server_name, self.port)

        stopped = threading.Event()

        def cancel() -> None:
            with self._lock:
                if stopped.is_set():
                    return
                stopped.set()
            server.should_exit = True
            thread.join(timeout=SHUTDOWN_TIMEOUT)
            if thread.is_alive():
                logger.warning("Peer server {} did not stop within {}s", self.server_name, SHUTDOWN_TIMEOUT)
            self.close()
            logger.info("Peer server {} stopped", self.server_name)

        return cancel

    def close(self) -> None:
        """Release the bound socket. Use for servers that never listened."""
        self._socket.close()

    def _abort_startup(self, message: str) -> None:
        logger.error(message)
        self.close()
        with self._lock:
            self._listening = False
        raise RuntimeError(message)
