"""Envelope and marker records, and their on-disk JSON encoding."""

from __future__ import annotations

import base64
import json
import secrets
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional, Union

from .errors import MalformedEnvelope

Headers = tuple[tuple[str, str], ...]

TUNNEL_METHOD = "TUNNEL"

# First response-direction chunk of an HTTP exchange: tag + JSON status/headers
HEAD_TAG = b"HEAD\n"

# Isolated request-direction chunk closing a streamed request body
EOF_REQ_BODY = b"EOF_REQ_BODY"

ACK_PAYLOAD = b'{"status": 200}'


def new_connection_id() -> str:
    """Short random hex token; collisions are accepted as negligible."""
    return secrets.token_hex(6)


class TunnelKind(Enum):
    """Transport the relay opens toward the origin for a raw tunnel."""

    TCP = "tunnel"
    TLS = "tls-tunnel"

    @property
    def default_port(self) -> int:
        return 443 if self is TunnelKind.TLS else 80


@dataclass(frozen=True)
class HttpEnvelope:
    """A real HTTP request the relay should perform."""

    method: str
    url: str
    headers: Headers = ()
    body: Optional[bytes] = None
    id: str = ""

    def with_id(self, cid: str) -> HttpEnvelope:
        return replace(self, id=cid)


@dataclass(frozen=True)
class TunnelEnvelope:
    """An opaque byte tunnel to ``host:port`` (CONNECT / WebSocket)."""

    kind: TunnelKind
    host: str
    port: int
    body: Optional[bytes] = None
    id: str = ""

    method = TUNNEL_METHOD

    @property
    def url(self) -> str:
        return f"{self.kind.value}://{self.host}:{self.port}"

    @classmethod
    def from_url(cls, url: str, body: Optional[bytes] = None, id: str = "") -> TunnelEnvelope:
        scheme, sep, target = url.partition("://")
        if not sep:
            raise MalformedEnvelope(f"Not a tunnel url: {url!r}")
        try:
            kind = TunnelKind(scheme)
        except ValueError:
            raise MalformedEnvelope(f"Unknown tunnel kind: {scheme!r}") from None
        host, _, port_str = target.rpartition(":")
        if not host:
            host, port_str = target, ""
        try:
            port = int(port_str) if port_str else kind.default_port
        except ValueError:
            raise MalformedEnvelope(f"Bad tunnel port in {url!r}") from None
        return cls(kind=kind, host=host.strip("[]"), port=port, body=body, id=id)

    def with_id(self, cid: str) -> TunnelEnvelope:
        return replace(self, id=cid)


RequestEnvelope = Union[HttpEnvelope, TunnelEnvelope]


@dataclass(frozen=True)
class ResponseEnvelope:
    """Whole-message result of a legacy (v1) exchange."""

    id: str
    status: int
    headers: Headers = ()
    body: bytes = b""
    error: Optional[str] = None


@dataclass(frozen=True)
class EndMarker:
    """Sender is done: the reader should expect ``max_seq`` chunks in total."""

    max_seq: int
    error: Optional[str] = None


# -- codec -------------------------------------------------------------------


def _b64(data: Optional[bytes]) -> Optional[str]:
    return base64.b64encode(data).decode("ascii") if data else None


def _unb64(value: Optional[str]) -> Optional[bytes]:
    return base64.b64decode(value) if value else None


def _headers_out(headers: Headers) -> list[list[str]]:
    return [[k, v] for k, v in headers]


def _headers_in(raw: Any) -> Headers:
    if not raw:
        return ()
    if isinstance(raw, dict):
        out: list[tuple[str, str]] = []
        for k, v in raw.items():
            for item in v if isinstance(v, list) else [v]:
                out.append((str(k), str(item)))
        return tuple(out)
    return tuple((str(k), str(v)) for k, v in raw)


def _load(data: bytes, what: str) -> dict[str, Any]:
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEnvelope(f"Bad {what}: {e}") from None
    if not isinstance(obj, dict):
        raise MalformedEnvelope(f"Bad {what}: not an object")
    return obj


def encode_request(env: RequestEnvelope) -> bytes:
    if isinstance(env, TunnelEnvelope):
        obj: dict[str, Any] = {"id": env.id, "method": TUNNEL_METHOD, "url": env.url, "headers": []}
    else:
        obj = {"id": env.id, "method": env.method, "url": env.url, "headers": _headers_out(env.headers)}
    obj["body"] = _b64(env.body)
    return json.dumps(obj).encode("utf-8")


def decode_request(data: bytes) -> RequestEnvelope:
    obj = _load(data, "request envelope")
    try:
        method = str(obj["method"])
        url = str(obj["url"])
        body = _unb64(obj.get("body"))
    except (KeyError, ValueError) as e:
        raise MalformedEnvelope(f"Bad request envelope: {e}") from None
    cid = str(obj.get("id") or "")
    if method == TUNNEL_METHOD:
        return TunnelEnvelope.from_url(url, body=body, id=cid)
    return HttpEnvelope(method=method, url=url, headers=_headers_in(obj.get("headers")), body=body, id=cid)


def encode_response(env: ResponseEnvelope) -> bytes:
    return json.dumps({
        "id": env.id,
        "status": env.status,
        "headers": _headers_out(env.headers),
        "body": _b64(env.body),
        "error": env.error,
    }).encode("utf-8")


def decode_response(data: bytes) -> ResponseEnvelope:
    obj = _load(data, "response envelope")
    try:
        return ResponseEnvelope(
            id=str(obj.get("id") or ""),
            status=int(obj.get("status") or 200),
            headers=_headers_in(obj.get("headers")),
            body=_unb64(obj.get("body")) or b"",
            error=obj.get("error"),
        )
    except (TypeError, ValueError) as e:
        raise MalformedEnvelope(f"Bad response envelope: {e}") from None


def encode_end(marker: EndMarker) -> bytes:
    return json.dumps({"error": marker.error, "maxSeq": marker.max_seq}).encode("utf-8")


def decode_end(data: bytes) -> EndMarker:
    obj = _load(data, "end marker")
    try:
        return EndMarker(max_seq=int(obj.get("maxSeq") or 0), error=obj.get("error"))
    except (TypeError, ValueError) as e:
        raise MalformedEnvelope(f"Bad end marker: {e}") from None


def encode_head(status: int, headers: Headers) -> bytes:
    return HEAD_TAG + json.dumps({"status": status, "headers": _headers_out(headers)}).encode("utf-8")


def decode_head(data: bytes) -> tuple[int, Headers]:
    if not data.startswith(HEAD_TAG):
        raise MalformedEnvelope("Response stream did not start with a header chunk")
    obj = _load(data[len(HEAD_TAG):], "response head")
    try:
        return int(obj["status"]), _headers_in(obj.get("headers"))
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedEnvelope(f"Bad response head: {e}") from None
