"""HTTP client for the AFM gateway.

Dependency-free (urllib) helpers for the JSON endpoints and for reading the
`text/event-stream` body of a streaming chat completion.
"""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from typing import Any, BinaryIO, Iterator, Sequence


DEFAULT_URL = "http://127.0.0.1:11535"
DEFAULT_MODEL = "apple-on-device"


class HttpError(RuntimeError):
    """A request to the gateway failed (transport error, non-2xx status or bad payload)."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.url = url
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        text = self.message
        if self.status_code is not None:
            text += f" (HTTP {self.status_code})"
        if self.url:
            text += f" [{self.url}]"
        detail = _error_detail(self.body)
        if detail:
            text += f": {detail}"
        return text


def _error_detail(body: str | None) -> str | None:
    # The gateway answers errors with {"error": "<message>"}.
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        return body
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return body


def iter_sse_data(stream: BinaryIO) -> Iterator[str]:
    """Yield the `data:` payload of each SSE event; multi-line data is joined with newlines."""
    pending: list[str] = []
    for raw in stream:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if line.startswith("data:"):
            pending.append(line[5:].lstrip())
        elif not line and pending:
            yield "\n".join(pending)
            pending = []

    if pending:
        yield "\n".join(pending)


def iter_sse_json(stream: BinaryIO) -> Iterator[dict[str, Any]]:
    """Decode each SSE payload as JSON until the `[DONE]` sentinel."""
    for payload in iter_sse_data(stream):
        if payload == "[DONE]":
            return
        yield json.loads(payload)


def chunk_text(chunk: dict[str, Any]) -> str:
    """Content carried by one `chat.completion.chunk`, or "" for role/finish chunks."""
    choices = chunk.get("choices") or []
    if not choices:
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else ""


class AfmClient:
    def __init__(self, *, base_url: str = DEFAULT_URL, model: str = DEFAULT_MODEL, timeout_s: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = float(timeout_s)

    def _url(self, path: str) -> str:
        return self.base_url + "/" + path.lstrip("/")

    def _open(self, method: str, path: str, *, payload: Any | None, accept: str, timeout_s: float | None):
        url = self._url(path)
        body = None if payload is None else json.dumps(payload, ensure_ascii=False).encode("utf-8")

        req = urllib.request.Request(url=url, method=method.upper(), data=body)
        req.add_header("Accept", accept)
        if body is not None:
            req.add_header("Content-Type", "application/json")

        try:
            return urllib.request.urlopen(req, timeout=self.timeout_s if timeout_s is None else timeout_s)
        except urllib.error.HTTPError as exc:
            try:
                body_text: str | None = exc.read().decode("utf-8", errors="replace")
            except OSError:
                body_text = None
            raise HttpError("HTTP error", url=url, status_code=exc.code, body=body_text) from exc
        except urllib.error.URLError as exc:
            raise HttpError("Failed to reach server", url=url) from exc
        except socket.timeout as exc:
            raise HttpError("Request timed out", url=url) from exc

    def request_json(self, method: str, path: str, *, payload: Any | None = None, timeout_s: float | None = None) -> Any:
        with self._open(method, path, payload=payload, accept="application/json", timeout_s=timeout_s) as resp:
            raw = resp.read()
            try:
                return json.loads(raw.decode("utf-8"))
            except ValueError as exc:
                raise HttpError(
                    "Invalid JSON response",
                    url=self._url(path),
                    status_code=getattr(resp, "status", None),
                    body=raw.decode("utf-8", errors="replace"),
                ) from exc

    def request_sse(self, method: str, path: str, *, payload: Any | None = None) -> Iterator[dict[str, Any]]:
        resp = self._open(method, path, payload=payload, accept="text/event-stream", timeout_s=None)
        with resp:
            yield from iter_sse_json(resp)

    def health(self) -> dict[str, Any]:
        result = self.request_json("GET", "/health", timeout_s=min(self.timeout_s, 5.0))
        if not isinstance(result, dict):
            raise HttpError("Invalid /health response", url=self._url("/health"))
        return result

    def models(self) -> list[dict[str, Any]]:
        result = self.request_json("GET", "/v1/models")
        if not isinstance(result, dict) or not isinstance(result.get("data"), list):
            raise HttpError("Invalid /v1/models response", url=self._url("/v1/models"))
        return [item for item in result["data"] if isinstance(item, dict)]

    def chat(
        self,
        messages: Sequence[dict[str, Any]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        stream: bool = False,
    ) -> Any:
        """POST /v1/chat/completions.

        Returns the completion object, or with `stream=True` an iterator over
        the decoded `chat.completion.chunk` objects.
        """
        payload: dict[str, Any] = {"model": self.model, "messages": list(messages), "stream": stream}
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if stream:
            return self.request_sse("POST", "/v1/chat/completions", payload=payload)
        return self.request_json("POST", "/v1/chat/completions", payload=payload)
