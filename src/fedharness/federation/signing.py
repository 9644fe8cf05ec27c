"""Ed25519 signing, key discovery and request authentication for federation."""

from __future__ import annotations

import copy
import json
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import httpx
from loguru import logger
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from fedharness.federation.encoding import canonical_json, decode_base64, encode_base64
from fedharness.federation.errors import ProtocolError

KEY_ALGORITHM = "ed25519"
AUTH_SCHEME = "X-Matrix"


class SignatureError(ValueError):
    """Raised when a signature is missing or does not verify."""


def now_ms() -> int:
    return int(time.time() * 1000)


def _signable(obj: Mapping[str, Any]) -> Dict[str, Any]:
    unsigned = dict(obj)
    unsigned.pop("signatures", None)
    unsigned.pop("unsigned", None)
    return unsigned


@dataclass
class SigningIdentity:
    """A server's name together with the key it signs with.

    Each peer server owns one of these; nothing about it is process-global.
    """

    server_name: str
    key_id: str
    signing_key: SigningKey

    @classmethod
    def generate(cls, server_name: str, key_id: Optional[str] = None) -> "SigningIdentity":
        if key_id is None:
            key_id = f"{KEY_ALGORITHM}:{secrets.token_hex(3)}"
        return cls(server_name=server_name, key_id=key_id, signing_key=SigningKey.generate())

    @property
    def verify_key(self) -> VerifyKey:
        return self.signing_key.verify_key

    @property
    def public_key_base64(self) -> str:
        return encode_base64(bytes(self.verify_key))

    def sign_json(self, obj: Mapping[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``obj`` with this server's signature added.

        Existing signatures from other servers or keys are preserved.
        """
        signed = copy.deepcopy(dict(obj))
        signature = self.signing_key.sign(canonical_json(_signable(signed))).signature
        signatures = signed.setdefault("signatures", {})
        signatures.setdefault(self.server_name, {})[self.key_id] = encode_base64(signature)
        return signed

    def key_document(self, valid_until_ts: int) -> Dict[str, Any]:
        """Build the signed response to a server key query."""
        document = {
            "server_name": self.server_name,
            "verify_keys": {self.key_id: {"key": self.public_key_base64}},
            "old_verify_keys": {},
            "valid_until_ts": valid_until_ts,
        }
        return self.sign_json(document)


def verify_json(
    obj: Mapping[str, Any], server_name: str, key_id: str, verify_key: VerifyKey
) -> None:
    """Check ``server_name``'s signature on ``obj`` made with ``key_id``.

    Raises:
        SignatureError: if the signature is absent, malformed or wrong.
    """
    try:
        encoded = obj["signatures"][server_name][key_id]
    except (KeyError, TypeError) as exc:
        raise SignatureError(f"no signature from {server_name} with key {key_id}") from exc
    try:
        signature = decode_base64(encoded)
        verify_key.verify(canonical_json(_signable(obj)), signature)
    except (BadSignatureError, ValueError) as exc:
        raise SignatureError(f"bad signature from {server_name} with key {key_id}") from exc


def verify_server_keys(document: Mapping[str, Any]) -> Dict[str, VerifyKey]:
    """Verify a key-query response against the keys it publishes.

    Returns:
        The published keys by key ID.

    Raises:
        SignatureError: if any published key has not signed the document.
    """
    server_name = document.get("server_name")
    verify_keys = document.get("verify_keys")
    if not isinstance(server_name, str) or not isinstance(verify_keys, dict) or not verify_keys:
        raise SignatureError("key document is missing server_name or verify_keys")

    keys: Dict[str, VerifyKey] = {}
    for key_id, entry in verify_keys.items():
        try:
            keys[key_id] = VerifyKey(decode_base64(entry["key"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise SignatureError(f"malformed verify key {key_id}") from exc
        verify_json(document, server_name, key_id, keys[key_id])
    return keys


# ----------------------------------------------------------------------
# Request authentication
# ----------------------------------------------------------------------


def _request_object(
    method: str,
    uri: str,
    origin: str,
    destination: str,
    content: Any = None,
) -> Dict[str, Any]:
    request: Dict[str, Any] = {
        "method": method.upper(),
        "uri": uri,
        "origin": origin,
        "destination": destination,
    }
    if content is not None:
        request["content"] = content
    return request


def sign_request(
    identity: SigningIdentity,
    method: str,
    uri: str,
    destination: str,
    content: Any = None,
) -> str:
    """Return the Authorization header value for an outgoing request.

    ``uri`` is the request path and query string exactly as sent.
    """
    signed = identity.sign_json(
        _request_object(method, uri, identity.server_name, destination, content)
    )
    sig = signed["signatures"][identity.server_name][identity.key_id]
    return (
        f'{AUTH_SCHEME} origin="{identity.server_name}",'
        f'destination="{destination}",key="{identity.key_id}",sig="{sig}"'
    )


def parse_authorization_header(header: str) -> Dict[str, str]:
    """Parse an X-Matrix Authorization header into its parameters.

    Raises:
        SignatureError: if the header is not a well-formed X-Matrix header.
    """
    scheme, _, params = header.strip().partition(" ")
    if scheme.lower() != AUTH_SCHEME.lower() or not params:
        raise SignatureError("Authorization header is not X-Matrix")

    parsed: Dict[str, str] = {}
    for part in params.split(","):
        name, sep, value = part.strip().partition("=")
        if not sep:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        parsed[name.strip().lower()] = value

    for required in ("origin", "key", "sig"):
        if not parsed.get(required):
            raise SignatureError(f"X-Matrix header missing {required}")
    return parsed


@dataclass
class FederationRequest:
    """A verified inbound request."""

    origin: str
    method: str
    uri: str
    content: Any = None


def verify_request(
    key_ring: "KeyRing",
    destination: str,
    method: str,
    uri: str,
    authorization: Optional[str],
    body: bytes = b"",
) -> FederationRequest:
    """Authenticate an inbound federation request.

    Fails closed: anything short of a valid signature from the claimed origin
    is rejected.

    Raises:
        ProtocolError: 401 ``M_UNAUTHORIZED`` for missing or invalid
            signatures, 400 ``M_NOT_JSON`` for unparseable bodies.
    """
    if not authorization:
        raise ProtocolError.unauthorized("Missing Authorization headers")
    try:
        params = parse_authorization_header(authorization)
    except SignatureError as exc:
        raise ProtocolError.unauthorized(str(exc)) from exc

    claimed_destination = params.get("destination")
    if claimed_destination and claimed_destination != destination:
        raise ProtocolError.unauthorized(
            f"Request destination {claimed_destination} is not this server ({destination})"
        )

    content = None
    if body:
        try:
            content = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProtocolError.not_json("The request body could not be decoded into JSON") from exc

    origin = params["origin"]
    key_id = params["key"]
    request = _request_object(method, uri, origin, destination, content)
    request["signatures"] = {origin: {key_id: params["sig"]}}

    try:
        verify_key = key_ring.verify_key(origin, key_id)
        verify_json(request, origin, key_id, verify_key)
    except (KeyFetchError, SignatureError) as exc:
        logger.warning("Rejecting {} {} from {}: {}", method, uri, origin, exc)
        raise ProtocolError.unauthorized(f"Failed to verify request signature: {exc}") from exc

    return FederationRequest(origin=origin, method=method.upper(), uri=uri, content=content)


# ----------------------------------------------------------------------
# Key ring
# ----------------------------------------------------------------------


class KeyFetchError(RuntimeError):
    """Raised when a server's signing key cannot be obtained."""


def default_resolver(server_name: str) -> str:
    return f"https://{server_name}"


@dataclass
class _CachedKey:
    verify_key: VerifyKey
    valid_until_ts: Optional[int] = None


@dataclass
class KeyRing:
    """Known signing keys of remote servers.

    Keys can be added directly with :meth:`add_key`. Unknown keys are fetched
    from the server's key endpoint, self-verified and cached until they expire.

    Attributes:
        resolver: Maps a server name to the base URL its key endpoint lives at.
        timeout: HTTP timeout for key fetches.
        verify_tls: Verify TLS certificates of key servers. Test deployments
            usually serve self-signed certificates.
        transport: Optional httpx transport used for key fetches.
    """

    resolver: Callable[[str], str] = default_resolver
    timeout: float = 10.0
    verify_tls: bool = False
    transport: Optional[httpx.BaseTransport] = None
    _keys: Dict[Tuple[str, str], _CachedKey] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def add_key(
        self,
        server_name: str,
        key_id: str,
        verify_key: VerifyKey,
        valid_until_ts: Optional[int] = None,
    ) -> None:
        with self._lock:
            self._keys[(server_name, key_id)] = _CachedKey(verify_key, valid_until_ts)

    def add_identity(self, identity: SigningIdentity) -> None:
        self.add_key(identity.server_name, identity.key_id, identity.verify_key)

    def verify_key(self, server_name: str, key_id: str) -> VerifyKey:
        """Return the key ``server_name`` signs with under ``key_id``.

        Raises:
            KeyFetchError: if the key is unknown and cannot be fetched.
        """
        with self._lock:
            cached = self._keys.get((server_name, key_id))
        if cached is not None and (
            cached.valid_until_ts is None or cached.valid_until_ts > now_ms()
        ):
            return cached.verify_key

        self._fetch(server_name)
        with self._lock:
            cached = self._keys.get((server_name, key_id))
        if cached is None:
            raise KeyFetchError(f"{server_name} does not publish key {key_id}")
        return cached.verify_key

    def _fetch(self, server_name: str) -> None:
        url = f"{self.resolver(server_name).rstrip('/')}/_matrix/key/v2/server"
        logger.debug("Fetching signing keys for {} from {}", server_name, url)
        try:
            with httpx.Client(
                timeout=self.timeout, verify=self.verify_tls, transport=self.transport
            ) as client:
                response = client.get(url)
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise KeyFetchError(f"failed to fetch keys for {server_name}: {exc}") from exc

        if not isinstance(document, dict):
            raise KeyFetchError(f"key document for {server_name} is not a JSON object")
        if document.get("server_name") != server_name:
            raise KeyFetchError(
                f"key document for {server_name} names {document.get('server_name')!r}"
            )
        try:
            keys = verify_server_keys(document)
        except SignatureError as exc:
            raise KeyFetchError(f"key document for {server_name} is not self-signed: {exc}") from exc

        valid_until_ts = document.get("valid_until_ts")
        if not isinstance(valid_until_ts, int) or valid_until_ts <= now_ms():
            raise KeyFetchError(f"key document for {server_name} has expired")

        for key_id, verify_key in keys.items():
            self.add_key(server_name, key_id, verify_key, valid_until_ts)
