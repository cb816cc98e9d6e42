"""Request router and handlers for OpenAI-style Chat Completions.

The HTTP layer lives under `apps/` and speaks raw HTTP through `apps.server.wire`.
All text generation is delegated to the engine (`afm/engine`).
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable

from afm import __version__
from afm.engine.chat_engine import ChatEngine
from afm.engine.chat_types import ChatMessage, ChatRequest, Usage

from apps.server.wire import MAX_BODY_BYTES, HTTPRequest, HTTPResponse

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "apple-on-device"
DEFAULT_OWNED_BY = "apple"

Handler = Callable[[HTTPRequest], Awaitable[HTTPResponse]]


class RequestError(Exception):
    """Raised by handlers to answer with `{"error": message}` and `status_code`."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class GatewayApp:
    """Exact (method, path) dispatch; anything unmatched is a 404."""

    def __init__(self, *, title: str, version: str) -> None:
        self.title = title
        self.version = version
        self._routes: dict[tuple[str, str], Handler] = {}

    def route(self, method: str, path: str) -> Callable[[Handler], Handler]:
        def register(handler: Handler) -> Handler:
            self._routes[(method.upper(), path)] = handler
            return handler

        return register

    def get(self, path: str) -> Callable[[Handler], Handler]:
        return self.route("GET", path)

    def post(self, path: str) -> Callable[[Handler], Handler]:
        return self.route("POST", path)

    @property
    def routes(self) -> list[tuple[str, str]]:
        return list(self._routes)

    async def __call__(self, request: HTTPRequest) -> HTTPResponse:
        handler = self._routes.get((request.method, request.path))
        if handler is None:
            return HTTPResponse.error(404, "Not Found")
        try:
            return await handler(request)
        except RequestError as exc:
            return HTTPResponse.error(exc.status_code, exc.message)
        except Exception:
            logger.exception("Unhandled error in %s %s", request.method, request.path)
            return HTTPResponse.error(500, "Internal Server Error")


def create_app(
    *,
    engine: ChatEngine,
    model_id: str = DEFAULT_MODEL_ID,
    owned_by: str = DEFAULT_OWNED_BY,
    max_body_bytes: int = MAX_BODY_BYTES,
    http_max_concurrency: int | None = None,
) -> GatewayApp:
    app = GatewayApp(title="AFM Server", version=__version__)

    http_semaphore: asyncio.Semaphore | None = None
    if http_max_concurrency is not None:
        try:
            http_max_concurrency = int(http_max_concurrency)
        except Exception as exc:
            raise ValueError("http_max_concurrency must be an integer") from exc
        if http_max_concurrency > 0:
            http_semaphore = asyncio.Semaphore(http_max_concurrency)
        elif http_max_concurrency < 0:
            raise ValueError("http_max_concurrency must be >= 0")

    async def _try_acquire_semaphore() -> None:
        if http_semaphore is None:
            return
        if http_semaphore.locked():
            raise RequestError(429, "Server is busy")
        await http_semaphore.acquire()

    def _release_semaphore() -> None:
        if http_semaphore is not None:
            http_semaphore.release()

    # -------------------------------------------------------------------------
    # Health & Models
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health(request: HTTPRequest) -> HTTPResponse:
        return HTTPResponse.json({"status": "ok"})

    @app.get("/v1/models")
    async def list_models(request: HTTPRequest) -> HTTPResponse:
        return _json_response(
            {
                "object": "list",
                "data": [
                    {
                        "id": model_id,
                        "object": "model",
                        "created": int(time.time()),
                        "owned_by": owned_by,
                    }
                ],
            }
        )

    # -------------------------------------------------------------------------
    # Chat Completions
    # -------------------------------------------------------------------------

    @app.post("/v1/chat/completions")
    async def chat_completions(request: HTTPRequest) -> HTTPResponse:
        if len(request.body) > max_body_bytes:
            raise RequestError(400, f"Request body too large (max {max_body_bytes} bytes)")
        try:
            payload = json.loads(request.body)
        except ValueError as exc:
            raise RequestError(400, f"Invalid request body: {exc}") from exc

        chat_req = _parse_chat_request(payload)
        created = int(time.time())
        chatcmpl_id = _completion_id()

        if chat_req.stream:
            await _try_acquire_semaphore()
            event_iter = _stream_chat_completions(
                engine=engine,
                chat_request=chat_req,
                model_id=model_id,
                created=created,
                chatcmpl_id=chatcmpl_id,
            )
            return HTTPResponse.event_stream(event_iter, on_close=_release_semaphore)

        await _try_acquire_semaphore()
        try:
            result = await engine.generate(chat_req)
        finally:
            _release_semaphore()

        return _json_response(
            _completion_body(
                chatcmpl_id=chatcmpl_id,
                created=created,
                model_id=model_id,
                content=result["content"],
                finish_reason=result["finish_reason"],
                usage=result["usage"],
            )
        )

    return app


def _completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:8]}"


def _json_response(payload: Any, *, status: int = 200) -> HTTPResponse:
    try:
        return HTTPResponse.json(payload, status=status)
    except (TypeError, ValueError) as exc:
        logger.error("Failed to encode response: %s", exc)
        return HTTPResponse.error(500, "Failed to encode response")


def _usage_dict(usage: Usage) -> dict[str, int]:
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }


def _completion_body(
    *,
    chatcmpl_id: str,
    created: int,
    model_id: str,
    content: str,
    finish_reason: str,
    usage: Usage,
) -> dict[str, Any]:
    return {
        "id": chatcmpl_id,
        "object": "chat.completion",
        "created": created,
        "model": model_id,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": _usage_dict(usage),
    }


def _chunk(
    *,
    chatcmpl_id: str,
    created: int,
    model_id: str,
    delta: dict[str, Any],
    finish_reason: str | None,
) -> dict[str, Any]:
    return {
        "id": chatcmpl_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model_id,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


SSE_DONE = "data: [DONE]\n\n"


async def _stream_chat_completions(
    *,
    engine: ChatEngine,
    chat_request: ChatRequest,
    model_id: str,
    created: int,
    chatcmpl_id: str,
) -> AsyncIterator[str]:
    """SSE frames: one chunk per delta, then the finish-reason chunk, then [DONE].

    The role is attached to the first content chunk only. The terminal pair is
    written after the delta iterator is exhausted, engine errors included.
    """
    sent_role = False
    async for event in engine.astream_deltas(chat_request):
        if not event.text:
            continue
        delta: dict[str, Any] = {"content": event.text}
        if not sent_role:
            delta = {"role": "assistant", **delta}
            sent_role = True
        yield _sse(
            json.dumps(
                _chunk(
                    chatcmpl_id=chatcmpl_id,
                    created=created,
                    model_id=model_id,
                    delta=delta,
                    finish_reason=None,
                ),
                separators=(",", ":"),
                ensure_ascii=False,
            )
        )

    terminal_delta: dict[str, Any] = {} if sent_role else {"role": "assistant"}
    yield _sse(
        json.dumps(
            _chunk(
                chatcmpl_id=chatcmpl_id,
                created=created,
                model_id=model_id,
                delta=terminal_delta,
                finish_reason="stop",
            ),
            separators=(",", ":"),
            ensure_ascii=False,
        )
    )
    yield SSE_DONE


def _parse_chat_request(payload: Any) -> ChatRequest:
    if not isinstance(payload, dict):
        raise RequestError(400, "Request body must be a JSON object.")

    model = payload.get("model")
    if not isinstance(model, str):
        raise RequestError(400, "'model' is required and must be a string.")

    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list):
        raise RequestError(400, "'messages' is required and must be a list.")

    messages: list[ChatMessage] = []
    for msg in raw_messages:
        if not isinstance(msg, dict):
            raise RequestError(400, "Each message must be an object.")
        role = msg.get("role")
        if not isinstance(role, str):
            raise RequestError(400, f"Invalid message role: {role!r}.")
        messages.append(ChatMessage(role=role, content=_coerce_content(msg.get("content"))))

    temperature = payload.get("temperature")
    if temperature is not None:
        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
            raise RequestError(400, "'temperature' must be a number.")
        temperature = float(temperature)
        if not math.isfinite(temperature):
            raise RequestError(400, "'temperature' must be a finite number.")

    max_tokens = payload.get("max_tokens")
    if max_tokens is not None:
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int):
            raise RequestError(400, "'max_tokens' must be an integer.")

    stream = payload.get("stream")
    if stream is not None and not isinstance(stream, bool):
        raise RequestError(400, "'stream' must be a boolean.")

    return ChatRequest(
        model=model,
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens,
        stream=bool(stream),
    )


def _coerce_content(content: Any) -> str | None:
    if content is None or isinstance(content, str):
        return content

    # Minimal support for OpenAI "content parts" format (text-only).
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") != "text":
                continue
            text = part.get("text")
            if isinstance(text, str):
                parts.append(text)
        return "".join(parts)

    raise RequestError(400, "Unsupported message content type.")
