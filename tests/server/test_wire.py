import asyncio

import pytest

from apps.server.wire import HTTPResponse, ParseError, discard_unread_body, parse_request, read_request_bytes


def test_parse_request_line_headers_and_body():
    req = parse_request(
        b"POST /v1/chat/completions HTTP/1.1\r\n"
        b"Host: localhost\r\n"
        b"Content-Type:  application/json \r\n"
        b"Content-Length: 2\r\n"
        b"\r\n"
        b"{}"
    )
    assert req.method == "POST"
    assert req.path == "/v1/chat/completions"
    assert req.version == "HTTP/1.1"
    assert req.headers == {"host": "localhost", "content-type": "application/json", "content-length": "2"}
    assert req.header("Content-Type") == "application/json"
    assert req.body == b"{}"


def test_parse_request_without_version_or_body():
    req = parse_request(b"GET /health\r\n\r\n")
    assert req.method == "GET"
    assert req.path == "/health"
    assert req.version is None
    assert req.body == b""


def test_parse_request_keeps_body_bytes_verbatim():
    body = b"line one\r\n\r\nline two"
    req = parse_request(b"POST /x HTTP/1.1\r\n\r\n" + body)
    assert req.body == body


def test_parse_request_without_blank_line_has_empty_body():
    req = parse_request(b"GET /health HTTP/1.1\r\nHost: x")
    assert req.headers == {"host": "x"}
    assert req.body == b""


@pytest.mark.parametrize(
    "raw",
    [
        b"",
        b"garbage\r\n\r\n",
        b"GET / HTTP/1.1 extra\r\n\r\n",
        b"GET / HTTP/1.1\r\nno-colon-here\r\n\r\n",
        b"GET / HTTP/1.1\r\n: empty-name\r\n\r\n",
        b"GET /\xff\xfe HTTP/1.1\r\n\r\n",
    ],
)
def test_parse_request_rejects_malformed_input(raw):
    with pytest.raises(ParseError):
        parse_request(raw)


def test_json_response_serialization():
    resp = HTTPResponse.json({"status": "ok"})
    data = resp.serialize()
    head, _, body = data.partition(b"\r\n\r\n")
    lines = head.decode().split("\r\n")
    assert lines[0] == "HTTP/1.1 200 OK"
    assert "Content-Type: application/json" in lines
    assert "Content-Length: 15" in lines
    assert "Connection: close" in lines
    assert body == b'{"status":"ok"}'


def test_content_length_counts_utf8_bytes():
    resp = HTTPResponse.json({"text": "héllo"})
    assert resp.body == '{"text":"héllo"}'
    assert resp.headers["Content-Length"] == str(len(resp.body.encode("utf-8")))


def test_error_response_and_reason_phrases():
    assert HTTPResponse.error(404, "Not Found").serialize().startswith(b"HTTP/1.1 404 Not Found\r\n")
    assert HTTPResponse.error(429, "Server is busy").reason == "Too Many Requests"
    assert HTTPResponse(status=599, body="").reason == "Unknown"
    assert HTTPResponse.error(400, "bad").body == '{"error":"bad"}'


def test_event_stream_headers_and_close_callback():
    async def frames():
        yield "data: x\n\n"

    closed = []
    resp = HTTPResponse.event_stream(frames(), on_close=lambda: closed.append(True))
    assert resp.is_streaming
    assert resp.headers["Content-Type"] == "text/event-stream"
    assert resp.headers["Cache-Control"] == "no-cache"
    assert "Content-Length" not in resp.headers
    assert resp.serialize_headers().endswith(b"Connection: close\r\n\r\n")

    resp.close()
    resp.close()
    assert closed == [True]


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


@pytest.mark.anyio
async def test_read_request_bytes_reads_content_length_body():
    raw = b"POST /x HTTP/1.1\r\nContent-Length: 5\r\n\r\nhello-and-more"
    data = await read_request_bytes(_reader(raw))
    assert data == b"POST /x HTTP/1.1\r\nContent-Length: 5\r\n\r\nhello"


@pytest.mark.anyio
async def test_read_request_bytes_without_content_length_reads_head_only():
    raw = b"GET /health HTTP/1.1\r\nHost: x\r\n\r\n"
    assert await read_request_bytes(_reader(raw)) == raw


@pytest.mark.anyio
async def test_read_request_bytes_caps_oversized_body():
    raw = b"POST /x HTTP/1.1\r\nContent-Length: 100\r\n\r\n" + b"a" * 100
    data = await read_request_bytes(_reader(raw), max_body_bytes=10)
    assert parse_request(data).body == b"a" * 11


@pytest.mark.anyio
async def test_discard_unread_body_drains_the_rest_of_a_capped_body():
    raw = b"POST /x HTTP/1.1\r\nContent-Length: 100\r\n\r\n" + b"a" * 100 + b"trailing"
    reader = _reader(raw)
    request = parse_request(await read_request_bytes(reader, max_body_bytes=10))
    assert await discard_unread_body(reader, request) == 89
    assert await reader.read() == b"trailing"


@pytest.mark.anyio
async def test_discard_unread_body_leaves_huge_overshoot_alone():
    raw = b"POST /x HTTP/1.1\r\nContent-Length: 100\r\n\r\n" + b"a" * 100
    reader = _reader(raw)
    request = parse_request(await read_request_bytes(reader, max_body_bytes=10))
    assert await discard_unread_body(reader, request, max_discard_bytes=50) == 0

    complete = parse_request(b"POST /x HTTP/1.1\r\nContent-Length: 2\r\n\r\n{}")
    assert await discard_unread_body(_reader(b"extra"), complete) == 0


@pytest.mark.anyio
async def test_read_request_bytes_empty_connection():
    assert await read_request_bytes(_reader(b"")) is None


@pytest.mark.anyio
@pytest.mark.parametrize(
    "raw",
    [
        b"POST /x HTTP/1.1\r\nTransfer-Encoding: chunked\r\n\r\n0\r\n\r\n",
        b"POST /x HTTP/1.1\r\nContent-Length: abc\r\n\r\n",
        b"POST /x HTTP/1.1\r\nContent-Length: -1\r\n\r\n",
        b"POST /x HTTP/1.1\r\nContent-Length: 10\r\n\r\nshort",
    ],
)
async def test_read_request_bytes_rejects_bad_framing(raw):
    with pytest.raises(ParseError):
        await read_request_bytes(_reader(raw))
