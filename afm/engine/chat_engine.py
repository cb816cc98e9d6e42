"""Async chat engine facade used by the HTTP gateway.

This module provides:
- request normalization -> flattened prompt + engine options
- session reuse through the SessionManager
- blocking engine calls on worker threads, bridged back to asyncio
- append-only delta streaming (snapshot diff or whole-text fallback)

It deliberately contains no HTTP code.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator

from .adapters.base import BaseAdapter
from .chat_types import ChatRequest, DeltaEvent, GenerationConfig, Usage
from .prompt import build_prompt, engine_options, estimate_usage, generation_config
from .sessions import SessionManager
from .streaming import WORD_DELAY_S, snapshot_deltas, word_deltas
from .types import EngineOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults."""

    word_delay_s: float = WORD_DELAY_S


class ChatEngine:
    """Single entry point from the gateway into the engine.

    Engine failures never raise out of `generate()` / `astream_deltas()`; they
    are folded into the generated text as `"Error: <description>"`.
    """

    def __init__(self, adapter: BaseAdapter, *, config: EngineConfig | None = None) -> None:
        self._adapter = adapter
        self._config = config or EngineConfig()
        self._sessions = SessionManager(adapter)

    @property
    def adapter(self) -> BaseAdapter:
        return self._adapter

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def model_info(self) -> dict[str, Any]:
        return getattr(self._adapter, "model_info", {})

    @property
    def supports_streaming(self) -> bool:
        return bool(getattr(self._adapter, "supports_streaming", False))

    def is_available(self) -> bool:
        try:
            return bool(self._adapter.is_available())
        except Exception:
            logger.exception("Engine availability check failed")
            return False

    def shutdown(self) -> None:
        self._sessions.reset()
        self._adapter.unload()

    def _prepare(self, request: ChatRequest) -> tuple[str, GenerationConfig, EngineOptions]:
        config = generation_config(request)
        prompt = build_prompt(request.messages, system_prompt=config.system_prompt)
        return prompt, config, engine_options(config)

    def _respond(self, prompt: str, config: GenerationConfig, options: EngineOptions) -> str:
        session = self._sessions.get_or_create(config.system_prompt)
        return session.respond(prompt, options)

    async def generate(self, request: ChatRequest) -> dict[str, Any]:
        """Non-streaming completion.

        Returns:
            Dict containing:
              - content: str (engine errors folded in as "Error: ...")
              - finish_reason: "stop"
              - usage: Usage (characters // 4 heuristic)
              - error: str | None
        """
        prompt, config, options = self._prepare(request)
        error: str | None = None
        try:
            content = await asyncio.to_thread(self._respond, prompt, config, options)
        except Exception as exc:
            logger.warning("Generation failed: %s", exc, exc_info=True)
            error = str(exc)
            content = f"Error: {error}"

        usage: Usage = estimate_usage(request.messages, content)
        return {"content": content, "finish_reason": "stop", "usage": usage, "error": error}

    async def astream_deltas(self, request: ChatRequest) -> AsyncIterator[DeltaEvent]:
        """Async iterator of append-only deltas; exhaustion marks the end of generation."""
        if not self.supports_streaming:
            result = await self.generate(request)
            async for word in word_deltas(result["content"], delay_s=self._config.word_delay_s):
                yield DeltaEvent(word)
            return

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[DeltaEvent | None] = asyncio.Queue()
        cancel = threading.Event()
        prompt, config, options = self._prepare(request)

        def post(event: DeltaEvent | None) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, event)
            except RuntimeError:
                # Event loop already closed: nobody is listening any more.
                cancel.set()

        def worker() -> None:
            try:
                session = self._sessions.get_or_create(config.system_prompt)
                for delta in snapshot_deltas(session.stream_response(prompt, options)):
                    if cancel.is_set():
                        break
                    post(DeltaEvent(delta))
            except Exception as exc:
                logger.warning("Streaming generation failed: %s", exc, exc_info=True)
                post(DeltaEvent(f"Error: {exc}"))
            finally:
                post(None)

        thread = threading.Thread(target=worker, name=f"afm-gen-{uuid.uuid4().hex[:8]}", daemon=True)
        thread.start()

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            # If the consumer stops early (client gone), stop feeding the queue.
            cancel.set()
