"""Protocol error responses returned to remote servers."""

from __future__ import annotations

from typing import Any, Dict


class ProtocolError(Exception):
    """An error rendered to the caller as ``{"errcode": ..., "error": ...}``.

    Raised inside peer-server handlers; the server's exception handler turns
    it into a JSON response with ``status``. Extra keyword arguments are added
    to the body.
    """

    def __init__(self, status: int, errcode: str, error: str, **extra: Any) -> None:
        super().__init__(f"{status} {errcode}: {error}")
        self.status = status
        self.errcode = errcode
        self.error = error
        self.extra = extra

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"errcode": self.errcode, "error": self.error}
        body.update(self.extra)
        return body

    @classmethod
    def unauthorized(cls, error: str) -> "ProtocolError":
        return cls(401, "M_UNAUTHORIZED", error)

    @classmethod
    def forbidden(cls, error: str) -> "ProtocolError":
        return cls(403, "M_FORBIDDEN", error)

    @classmethod
    def not_found(cls, error: str) -> "ProtocolError":
        return cls(404, "M_NOT_FOUND", error)

    @classmethod
    def not_json(cls, error: str) -> "ProtocolError":
        return cls(400, "M_NOT_JSON", error)

    @classmethod
    def bad_json(cls, error: str, status: int = 400) -> "ProtocolError":
        return cls(status, "M_BAD_JSON", error)

    @classmethod
    def incompatible_room_version(cls, room_version: str) -> "ProtocolError":
        return cls(
            400,
            "M_INCOMPATIBLE_ROOM_VERSION",
            f"Your homeserver does not support room version {room_version}",
            room_version=room_version,
        )

    @classmethod
    def unknown(cls, error: str) -> "ProtocolError":
        return cls(500, "M_UNKNOWN", error)
