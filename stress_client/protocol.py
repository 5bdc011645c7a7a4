"""Device-connect wire protocol.

Every frame is a msgpack map::

    {"hdr": {"proto": int, "typ": str, "sid": str, "props": {...}}, "body": bytes}

Inbound frames are classified into one of the request variants below;
anything the stress client cannot serve lands in :class:`UnsupportedRequest`
and is answered with an explicit error frame.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

import msgpack

# Protocol numbers
PROTO_INVALID = 0
PROTO_SHELL = 1
PROTO_FILE_TRANSFER = 2
PROTO_PORT_FORWARD = 3
PROTO_MENDER_CLIENT = 4
PROTO_CONTROL = 0xFFFF

# Shell message types
MSG_SPAWN_SHELL = "new"
# Shell "status" property value marking an error reply
SHELL_STATUS_ERROR = 2

# Control message types
MSG_OPEN = "open"
MSG_ACCEPT = "accept"
MSG_CLOSE = "close"
MSG_ERROR = "error"
MSG_PING = "ping"
MSG_PONG = "pong"

_CONTROL_TYPES = frozenset({MSG_ERROR, MSG_CLOSE, MSG_PING, MSG_PONG})

SHELL_NOT_SUPPORTED = b"not supported by the fleet stress client"


class ProtocolError(Exception):
    """Raised when a frame cannot be decoded."""


@dataclass
class ProtoMsg:
    proto: int
    typ: str
    sid: str = ""
    props: dict[str, Any] = field(default_factory=dict)
    body: bytes = b""

    def encode(self) -> bytes:
        hdr: dict[str, Any] = {"proto": self.proto, "typ": self.typ, "sid": self.sid}
        if self.props:
            hdr["props"] = self.props
        return msgpack.packb({"hdr": hdr, "body": self.body}, use_bin_type=True)

    @classmethod
    def decode(cls, data: bytes) -> ProtoMsg:
        try:
            raw = msgpack.unpackb(data, raw=False)
        except (ValueError, msgpack.ExtraData, msgpack.FormatError, msgpack.StackError) as exc:
            raise ProtocolError(f"Undecodable frame: {exc}") from exc
        if not isinstance(raw, dict) or not isinstance(raw.get("hdr"), dict):
            raise ProtocolError("Frame without header")
        hdr = raw["hdr"]
        body = raw.get("body") or b""
        if isinstance(body, str):
            body = body.encode()
        try:
            return cls(
                proto=int(hdr.get("proto", PROTO_INVALID)),
                typ=str(hdr.get("typ", "")),
                sid=str(hdr.get("sid") or ""),
                props=dict(hdr.get("props") or {}),
                body=bytes(body),
            )
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f"Malformed frame header: {exc}") from exc


# ── Inbound request variants ──────────────────────────────────────


@dataclass(frozen=True)
class SpawnShellRequest:
    msg: ProtoMsg


@dataclass(frozen=True)
class ControlFrame:
    msg: ProtoMsg

    @property
    def error(self) -> Optional[str]:
        if self.msg.typ != MSG_ERROR or not self.msg.body:
            return None
        try:
            payload = msgpack.unpackb(self.msg.body, raw=False)
        except (ValueError, msgpack.ExtraData, msgpack.FormatError, msgpack.StackError):
            return None
        return payload.get("err") if isinstance(payload, dict) else None


@dataclass(frozen=True)
class UnsupportedRequest:
    msg: ProtoMsg


InboundRequest = Union[SpawnShellRequest, ControlFrame, UnsupportedRequest]


def classify(msg: ProtoMsg) -> InboundRequest:
    if msg.proto == PROTO_SHELL and msg.typ == MSG_SPAWN_SHELL:
        return SpawnShellRequest(msg)
    if msg.proto == PROTO_CONTROL and msg.typ in _CONTROL_TYPES:
        return ControlFrame(msg)
    return UnsupportedRequest(msg)


# ── Replies ───────────────────────────────────────────────────────


def shell_unsupported(request: ProtoMsg) -> ProtoMsg:
    """Reply to a spawn-shell request with an error-status shell frame."""
    return ProtoMsg(
        proto=request.proto,
        typ=request.typ,
        sid=request.sid,
        props={"status": SHELL_STATUS_ERROR},
        body=SHELL_NOT_SUPPORTED,
    )


def error_frame(request: ProtoMsg, reason: str, close: bool = True) -> ProtoMsg:
    """Build a control error frame rejecting *request*."""
    body: dict[str, Any] = {
        "err": reason,
        "msgproto": request.proto,
        "msgtype": request.typ,
    }
    if close:
        body["close"] = True
    return ProtoMsg(
        proto=PROTO_CONTROL,
        typ=MSG_ERROR,
        sid=request.sid,
        body=msgpack.packb(body, use_bin_type=True),
    )


def pong_frame(request: ProtoMsg) -> ProtoMsg:
    return ProtoMsg(proto=PROTO_CONTROL, typ=MSG_PONG, sid=request.sid)
