"""Minimal HTTP/1.1 wire codec.

One request per connection, no keep-alive, no chunked transfer encoding.
Requests are parsed from raw bytes; responses are serialized either in one
piece or, for event streams, as a header block followed by body frames.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, AsyncIterator, Callable


MAX_HEADER_BYTES = 64 * 1024
MAX_BODY_BYTES = 1024 * 1024
MAX_DISCARD_BYTES = 64 * 1024 * 1024

_HEADER_END = b"\r\n\r\n"


class ParseError(ValueError):
    """Raised for bytes that do not form an HTTP request."""


@dataclass(frozen=True)
class HTTPRequest:
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    version: str | None = None

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)


def parse_request(data: bytes) -> HTTPRequest:
    """Parse one raw request.

    The request line needs a method and a path; the protocol version is optional.
    Header names are lower-cased, values trimmed. The first empty line ends the
    header section and everything after it is the body, verbatim.
    """
    head, sep, body = data.partition(_HEADER_END)
    try:
        text = head.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError("Request head is not valid UTF-8") from exc

    lines = text.split("\r\n")
    parts = lines[0].split()
    if len(parts) not in (2, 3):
        raise ParseError(f"Malformed request line: {lines[0]!r}")
    method, path = parts[0], parts[1]
    version = parts[2] if len(parts) == 3 else None

    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        name, colon, value = line.partition(":")
        name = name.strip()
        if not colon or not name:
            raise ParseError(f"Malformed header line: {line!r}")
        headers[name.lower()] = value.strip()

    return HTTPRequest(method=method, path=path, headers=headers, body=body if sep else b"", version=version)


async def read_request_bytes(
    reader: asyncio.StreamReader,
    *,
    max_header_bytes: int = MAX_HEADER_BYTES,
    max_body_bytes: int = MAX_BODY_BYTES,
) -> bytes | None:
    """Read one request off the wire: the header block plus a Content-Length body.

    At most `max_body_bytes + 1` body bytes are read, so callers can tell an
    oversized body apart without buffering all of it. Returns None when the peer
    closed the connection before sending anything.
    """
    try:
        head = await reader.readuntil(_HEADER_END)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        # Peer closed without a blank line; parse what arrived.
        return exc.partial
    except asyncio.LimitOverrunError as exc:
        raise ParseError("Request head too large") from exc

    if len(head) > max_header_bytes:
        raise ParseError("Request head too large")

    request = parse_request(head)
    if "chunked" in (request.header("transfer-encoding") or "").lower():
        raise ParseError("Chunked transfer encoding is not supported")

    raw_length = request.header("content-length")
    if raw_length is None:
        return head
    try:
        length = int(raw_length)
    except ValueError as exc:
        raise ParseError(f"Invalid Content-Length: {raw_length!r}") from exc
    if length < 0:
        raise ParseError(f"Invalid Content-Length: {raw_length!r}")

    try:
        body = await reader.readexactly(min(length, max_body_bytes + 1))
    except asyncio.IncompleteReadError as exc:
        raise ParseError("Request body shorter than Content-Length") from exc
    return head + body


async def discard_unread_body(
    reader: asyncio.StreamReader,
    request: HTTPRequest,
    *,
    max_discard_bytes: int = MAX_DISCARD_BYTES,
) -> int:
    """Read and drop whatever part of a capped body is still on the wire.

    A peer only receives the response to an oversized request once the rest of
    its body has been consumed; closing with unread input resets the connection.
    Bodies that overshoot by more than `max_discard_bytes` are left unread.
    Returns the number of bytes dropped.
    """
    try:
        declared = int(request.header("content-length") or 0)
    except ValueError:
        return 0
    remaining = declared - len(request.body)
    if remaining <= 0 or remaining > max_discard_bytes:
        return 0

    dropped = 0
    while dropped < remaining:
        chunk = await reader.read(min(64 * 1024, remaining - dropped))
        if not chunk:
            break
        dropped += len(chunk)
    return dropped


def _has_header(headers: dict[str, str], name: str) -> bool:
    name = name.lower()
    return any(k.lower() == name for k in headers)


@dataclass
class HTTPResponse:
    """A response ready for the wire.

    Non-streaming responses carry `body`. Event-stream responses carry `stream`,
    an async iterator of already-framed body pieces written after the header block.
    `on_close` runs once when the connection is done with the response, whether
    or not the stream was consumed.
    """

    status: int
    body: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    stream: AsyncIterator[str] | None = None
    on_close: Callable[[], None] | None = None

    def __post_init__(self) -> None:
        headers = dict(self.headers)
        if not _has_header(headers, "Content-Type"):
            headers["Content-Type"] = "application/json"
        if self.stream is None and not _has_header(headers, "Content-Length"):
            headers["Content-Length"] = str(len((self.body or "").encode("utf-8")))
        headers["Connection"] = "close"
        self.headers = headers

    @property
    def is_streaming(self) -> bool:
        return self.stream is not None

    @property
    def reason(self) -> str:
        try:
            return HTTPStatus(self.status).phrase
        except ValueError:
            return "Unknown"

    @classmethod
    def json(cls, payload: Any, *, status: int = 200) -> "HTTPResponse":
        """JSON response. `json.dumps` errors (TypeError/ValueError) propagate to the caller."""
        return cls(status=status, body=json.dumps(payload, ensure_ascii=False, separators=(",", ":")))

    @classmethod
    def error(cls, status: int, message: str) -> "HTTPResponse":
        return cls.json({"error": message}, status=status)

    @classmethod
    def event_stream(
        cls, stream: AsyncIterator[str], *, on_close: Callable[[], None] | None = None
    ) -> "HTTPResponse":
        return cls(
            status=200,
            headers={"Content-Type": "text/event-stream", "Cache-Control": "no-cache"},
            stream=stream,
            on_close=on_close,
        )

    def close(self) -> None:
        callback, self.on_close = self.on_close, None
        if callback is not None:
            callback()

    def serialize_headers(self) -> bytes:
        lines = [f"HTTP/1.1 {self.status} {self.reason}\r\n"]
        lines.extend(f"{name}: {value}\r\n" for name, value in self.headers.items())
        lines.append("\r\n")
        return "".join(lines).encode("utf-8")

    def serialize(self) -> bytes:
        """Header block plus body. Streaming bodies are written separately."""
        data = self.serialize_headers()
        if self.body is not None:
            data += self.body.encode("utf-8")
        return data
