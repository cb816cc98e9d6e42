"""Placeholder backend for development without an on-device model.

It answers every prompt with a canned message that echoes the last user turn
and cannot stream, so the gateway exercises its whole-text fallback path.
"""

from __future__ import annotations

import re
from dataclasses import asdict
from typing import Any

from ..types import EngineOptions, ModelInfo
from .base import BaseAdapter, BaseSession, EngineUnavailableError


_USER_TURN = re.compile(r"(?:^|\n\n)User: ")
_NEXT_TURN = re.compile(r"\n\n(?:System|User|Assistant): ")


def placeholder_reply(last_user_message: str | None) -> str:
    said = last_user_message if last_user_message else "Hello"
    return (
        f'This is a placeholder response from AFM Server. You said: "{said}". '
        "To use an actual on-device model, start the server with a real backend "
        "(for example --backend transformers --model <path>)."
    )


def _last_user_segment(prompt: str) -> str | None:
    # A turn runs from its label to the next labeled turn; content may hold blank lines.
    starts = list(_USER_TURN.finditer(prompt))
    if not starts:
        return None
    begin = starts[-1].end()
    following = _NEXT_TURN.search(prompt, begin)
    end = following.start() if following else len(prompt)
    return prompt[begin:end].strip()


class PlaceholderSession(BaseSession):
    def respond(self, prompt: str, options: EngineOptions) -> str:
        return placeholder_reply(_last_user_segment(prompt))


class PlaceholderAdapter(BaseAdapter):
    """
    Adapter that fakes generation.

    Availability is configurable so the status surface can be exercised.
    """

    supports_streaming = False

    def __init__(self, *, available: bool = True) -> None:
        self._available = bool(available)
        self._sessions_created = 0

    def load(self, model_path: str | None = None, **kwargs) -> None:
        if "available" in kwargs:
            self._available = bool(kwargs.pop("available"))

    def is_available(self) -> bool:
        return self._available

    def create_session(self, instructions: str | None = None) -> BaseSession:
        if not self._available:
            raise EngineUnavailableError("Placeholder engine is marked unavailable")
        self._sessions_created += 1
        return PlaceholderSession(instructions)

    @property
    def model_info(self) -> dict[str, Any]:
        info = ModelInfo(
            model_path=None,
            model_family="placeholder",
            extra={"sessions_created": self._sessions_created},
        )
        return asdict(info)
