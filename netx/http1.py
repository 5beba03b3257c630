"""HTTP/1.x framing shared by the proxy (browser side) and the relay (origin side).

Bodies are always handled as async iterators of byte pieces so they can
be streamed into the transport as they arrive.  Three framing modes are
understood: ``Transfer-Encoding: chunked``, ``Content-Length`` and (for
responses) close-delimited.
"""

from __future__ import annotations

from asyncio import StreamReader
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import AsyncIterator, Iterable, Optional, Sequence

# Per-hop semantics; must never cross the tunnel in either direction
HOP_BY_HOP: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "proxy-connection",
    }
)

# Methods for which a request without Content-Length has no body
BODYLESS_METHODS: frozenset[str] = frozenset({"GET", "HEAD", "OPTIONS", "DELETE", "TRACE", "CONNECT"})

LAST_CHUNK = b"0\r\n\r\n"

HeaderList = list[tuple[str, str]]


def header_value(headers: Iterable[tuple[str, str]], name: str) -> Optional[str]:
    """First value of *name* (case-insensitive), or ``None``."""
    lower = name.lower()
    for k, v in headers:
        if k.lower() == lower:
            return v
    return None


def filter_headers(headers: Iterable[tuple[str, str]], extra: Iterable[str] = ()) -> HeaderList:
    """Drop hop-by-hop headers (and any in *extra*)."""
    skip = HOP_BY_HOP | {e.lower() for e in extra}
    return [(k, v) for k, v in headers if k.lower() not in skip]


def content_length(headers: Iterable[tuple[str, str]]) -> int:
    """Declared Content-Length, or ``-1`` if absent or unparseable."""
    value = header_value(headers, "content-length")
    if value is None:
        return -1
    try:
        return int(value.split(",")[0].strip())
    except ValueError:
        return -1


def is_chunked(headers: Iterable[tuple[str, str]]) -> bool:
    value = header_value(headers, "transfer-encoding")
    return value is not None and "chunked" in value.lower()


@dataclass
class RequestHead:
    """Request line and headers of an HTTP/1.x request."""

    method: str
    target: str
    version: str
    headers: HeaderList = field(default_factory=list)

    def get(self, name: str) -> Optional[str]:
        return header_value(self.headers, name)

    @property
    def is_upgrade(self) -> bool:
        connection = (self.get("connection") or "").lower()
        return "upgrade" in connection and self.get("upgrade") is not None

    @property
    def keep_alive(self) -> bool:
        connection = (self.get("connection") or self.get("proxy-connection") or "").lower()
        if self.version.upper() == "HTTP/1.0":
            return "keep-alive" in connection
        return "close" not in connection


@dataclass
class ResponseHead:
    """Status line and headers of an HTTP/1.x response."""

    version: str
    status: int
    reason: str
    headers: HeaderList = field(default_factory=list)

    def get(self, name: str) -> Optional[str]:
        return header_value(self.headers, name)


async def _read_header_lines(reader: StreamReader) -> HeaderList:
    headers: HeaderList = []
    while True:
        line = await reader.readline()
        if not line or line in (b"\r\n", b"\n"):
            break
        decoded = line.decode("latin-1").strip()
        if ":" in decoded:
            k, v = decoded.split(":", 1)
            headers.append((k.strip(), v.strip()))
    return headers


async def read_request_head(reader: StreamReader) -> Optional[RequestHead]:
    """Read a request line + headers.  ``None`` on EOF or malformed input."""
    line = await reader.readline()
    while line in (b"\r\n", b"\n"):
        line = await reader.readline()
    if not line:
        return None
    parts = line.decode("latin-1").strip().split(" ", 2)
    if len(parts) < 3:
        return None
    method, target, version = parts
    headers = await _read_header_lines(reader)
    return RequestHead(method.upper(), target, version, headers)


async def read_response_head(reader: StreamReader) -> ResponseHead:
    """Read a final status line + headers, skipping interim 1xx responses.

    ``101 Switching Protocols`` is final and returned as such.
    Raises ``ConnectionError`` if the peer closes before a status line.
    """
    while True:
        line = await reader.readline()
        if not line:
            raise ConnectionError("Origin closed the connection before responding")
        parts = line.decode("latin-1").strip().split(" ", 2)
        if len(parts) < 2 or not parts[1].isdigit():
            raise ConnectionError(f"Malformed status line: {line[:80]!r}")
        version, status = parts[0], int(parts[1])
        reason = parts[2] if len(parts) > 2 else ""
        headers = await _read_header_lines(reader)
        if 100 <= status < 200 and status != 101:
            continue
        return ResponseHead(version, status, reason, headers)


def response_has_body(method: str, status: int) -> bool:
    return not (method.upper() == "HEAD" or 100 <= status < 200 or status in (204, 304))


async def _iter_chunked(reader: StreamReader) -> AsyncIterator[bytes]:
    while True:
        size_line = await reader.readline()
        if not size_line:
            raise ConnectionError("Connection closed inside a chunked body")
        size = int(size_line.split(b";", 1)[0].strip() or b"0", 16)
        if size == 0:
            # trailers, up to the blank line
            while True:
                trailer = await reader.readline()
                if not trailer or trailer in (b"\r\n", b"\n"):
                    return
        yield await reader.readexactly(size)
        await reader.readline()  # chunk-terminating CRLF


async def _iter_fixed(reader: StreamReader, length: int, bufsize: int) -> AsyncIterator[bytes]:
    remaining = length
    while remaining > 0:
        piece = await reader.read(min(remaining, bufsize))
        if not piece:
            raise ConnectionError(f"Connection closed with {remaining} body bytes outstanding")
        remaining -= len(piece)
        yield piece


async def _iter_until_eof(reader: StreamReader, bufsize: int) -> AsyncIterator[bytes]:
    while True:
        piece = await reader.read(bufsize)
        if not piece:
            return
        yield piece


def iter_request_body(reader: StreamReader, head: RequestHead, bufsize: int = 65536) -> AsyncIterator[bytes]:
    """Body pieces of a request; empty when there is no framed body."""
    if is_chunked(head.headers):
        return _iter_chunked(reader)
    return _iter_fixed(reader, max(content_length(head.headers), 0), bufsize)


def iter_response_body(
    reader: StreamReader, head: ResponseHead, method: str, bufsize: int = 65536
) -> AsyncIterator[bytes]:
    """De-framed body pieces of a response."""
    if not response_has_body(method, head.status):
        return _iter_fixed(reader, 0, bufsize)
    if is_chunked(head.headers):
        return _iter_chunked(reader)
    length = content_length(head.headers)
    if length >= 0:
        return _iter_fixed(reader, length, bufsize)
    return _iter_until_eof(reader, bufsize)


def encode_chunk(data: bytes) -> bytes:
    return b"%x\r\n%s\r\n" % (len(data), data)


def _header_block(headers: Sequence[tuple[str, str]]) -> bytes:
    return b"".join(f"{k}: {v}\r\n".encode("latin-1", "replace") for k, v in headers) + b"\r\n"


def serialize_request_head(method: str, target: str, version: str, headers: Sequence[tuple[str, str]]) -> bytes:
    return f"{method} {target} {version}\r\n".encode("latin-1", "replace") + _header_block(headers)


def serialize_response_head(status: int, headers: Sequence[tuple[str, str]], reason: Optional[str] = None) -> bytes:
    if reason is None:
        try:
            reason = HTTPStatus(status).phrase
        except ValueError:
            reason = ""
    return f"HTTP/1.1 {status} {reason}\r\n".encode("latin-1", "replace") + _header_block(headers)


def error_response(status: int, message: str) -> bytes:
    """A complete, connection-closing plain-text error response."""
    body = message.encode("utf-8", "replace")
    return serialize_response_head(
        status,
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("Content-Length", str(len(body))),
            ("Connection", "close"),
        ],
    ) + body
