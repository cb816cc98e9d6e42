"""TCP connection acceptor for the gateway.

One asyncio task per accepted connection: read one request, dispatch it, write
the response (streamed bodies frame by frame), close. There is no keep-alive and,
by default, no cap on simultaneous connections.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable

from afm.engine.chat_engine import ChatEngine

from apps.server.wire import (
    MAX_BODY_BYTES,
    MAX_HEADER_BYTES,
    HTTPRequest,
    HTTPResponse,
    ParseError,
    discard_unread_body,
    parse_request,
    read_request_bytes,
)

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 11535


class ServerState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class BindError(RuntimeError):
    """The listener could not bind its port."""


class RequestCounter:
    """Process-lifetime request count, safe to bump from any task or thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            return self._count

    def read(self) -> int:
        with self._lock:
            return self._count


@dataclass(frozen=True)
class GatewayConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_header_bytes: int = MAX_HEADER_BYTES
    max_body_bytes: int = MAX_BODY_BYTES


@dataclass(frozen=True)
class ServerStatus:
    """Read-only snapshot for status displays."""

    state: ServerState
    host: str
    port: int
    model_available: bool
    request_count: int
    active_connections: int = 0
    last_error: str | None = None

    @property
    def running(self) -> bool:
        return self.state is ServerState.RUNNING


class GatewayServer:
    """Owns the listener and its lifecycle: stopped -> starting -> running -> stopping -> stopped."""

    def __init__(
        self,
        app: Callable[[HTTPRequest], Awaitable[HTTPResponse]],
        *,
        config: GatewayConfig | None = None,
        engine: ChatEngine | None = None,
        counter: RequestCounter | None = None,
    ) -> None:
        self._app = app
        self._config = config or GatewayConfig()
        self._engine = engine
        self._counter = counter or RequestCounter()
        self._state = ServerState.STOPPED
        self._server: asyncio.AbstractServer | None = None
        self._bound_port: int | None = None
        self._last_error: str | None = None
        self._connections: set[asyncio.Task] = set()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def counter(self) -> RequestCounter:
        return self._counter

    @property
    def port(self) -> int:
        """Bound port while running (resolves port 0), else the configured port."""
        if self._bound_port is not None:
            return self._bound_port
        return self._config.port

    @property
    def url(self) -> str:
        return f"http://{self._config.host}:{self.port}"

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Bind and start accepting. No-op while starting or running.

        Raises:
            BindError: The port could not be bound; the server is back to stopped.
        """
        if self._state in (ServerState.STARTING, ServerState.RUNNING):
            return

        self._state = ServerState.STARTING
        try:
            self._server = await asyncio.start_server(
                self._handle_connection,
                host=self._config.host,
                port=self._config.port,
                limit=self._config.max_header_bytes,
                reuse_address=True,
            )
        except OSError as exc:
            self._state = ServerState.STOPPED
            self._last_error = f"Failed to bind {self._config.host}:{self._config.port}: {exc}"
            logger.error(self._last_error)
            raise BindError(self._last_error) from exc

        sockets = self._server.sockets or ()
        self._bound_port = sockets[0].getsockname()[1] if sockets else self._config.port
        self._last_error = None
        self._state = ServerState.RUNNING
        logger.info("HTTP server listening on %s", self.url)

    async def stop(self) -> None:
        """Stop accepting. Connections already accepted finish on their own."""
        if self._state is not ServerState.RUNNING:
            return

        self._state = ServerState.STOPPING
        server, self._server = self._server, None
        if server is not None:
            server.close()
        self._bound_port = None
        self._state = ServerState.STOPPED
        logger.info("HTTP server stopped (%d connection(s) still in flight)", len(self._connections))

    async def __aenter__(self) -> "GatewayServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def status(self) -> ServerStatus:
        return ServerStatus(
            state=self._state,
            host=self._config.host,
            port=self.port,
            model_available=self._engine.is_available() if self._engine is not None else False,
            request_count=self._counter.read(),
            active_connections=len(self._connections),
            last_error=self._last_error,
        )

    async def watch_status(self, interval_s: float, callback: Callable[[ServerStatus], None]) -> None:
        """Poll `status()` every `interval_s` and call `callback` whenever it changes. Runs until cancelled."""
        last: ServerStatus | None = None
        while True:
            current = self.status()
            if current != last:
                callback(current)
                last = current
            await asyncio.sleep(interval_s)

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def _read_and_dispatch(self, reader: asyncio.StreamReader, peer: str) -> HTTPResponse | None:
        try:
            raw = await read_request_bytes(
                reader,
                max_header_bytes=self._config.max_header_bytes,
                max_body_bytes=self._config.max_body_bytes,
            )
            if raw is None:
                return None
            request = parse_request(raw)
        except ParseError as exc:
            logger.warning("Bad request from %s: %s", peer, exc)
            return HTTPResponse.error(400, "Invalid HTTP request")

        dropped = await discard_unread_body(reader, request)
        if dropped:
            logger.debug("Dropped %d unread body byte(s) from %s", dropped, peer)

        self._counter.increment()
        response = await self._app(request)
        logger.info("%s %s -> %d", request.method, request.path, response.status)
        return response

    async def _send(self, writer: asyncio.StreamWriter, response: HTTPResponse) -> None:
        try:
            if response.stream is None:
                writer.write(response.serialize())
                await writer.drain()
                return

            writer.write(response.serialize_headers())
            await writer.drain()
            async for piece in response.stream:
                writer.write(piece.encode("utf-8"))
                await writer.drain()
        finally:
            aclose = getattr(response.stream, "aclose", None)
            if aclose is not None:
                await aclose()
            response.close()

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        peer = str(writer.get_extra_info("peername"))
        try:
            response = await self._read_and_dispatch(reader, peer)
            if response is not None:
                await self._send(writer, response)
        except ConnectionError as exc:
            logger.debug("Connection from %s dropped: %s", peer, exc)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
            if task is not None:
                self._connections.discard(task)
