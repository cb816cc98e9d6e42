"""Reusable engine session keyed by system instructions.

Creating an engine session is expensive enough to justify reuse across
requests, but a session's instructions are fixed for its lifetime. The manager
keeps at most one session and replaces it whenever a request arrives with
different instructions (absent instructions count as their own value).
"""

from __future__ import annotations

import logging
import threading

from .adapters.base import BaseAdapter, BaseSession

logger = logging.getLogger(__name__)


class SessionManager:
    """Owns the cached session and its instructions tag.

    Thread-safety:
        Every read and replacement of the cached session goes through
        `get_or_create()` under one lock, so concurrent callers never both
        decide to replace the session based on stale state.
    """

    def __init__(self, adapter: BaseAdapter) -> None:
        self._adapter = adapter
        self._lock = threading.Lock()
        self._session: BaseSession | None = None
        self._instructions: str | None = None
        self._sessions_created = 0

    @property
    def sessions_created(self) -> int:
        with self._lock:
            return self._sessions_created

    def get_or_create(self, instructions: str | None) -> BaseSession:
        """Return the cached session if its instructions match exactly, else a new one."""
        with self._lock:
            if self._session is not None and self._instructions == instructions:
                return self._session

            if self._session is not None:
                logger.debug(
                    "Replacing engine session (instructions changed: %r -> %r)",
                    _preview(self._instructions),
                    _preview(instructions),
                )
            # Drop the old handle before asking for a new one; a failed create leaves no session.
            self._session = None
            self._instructions = None

            session = self._adapter.create_session(instructions)
            self._session = session
            self._instructions = instructions
            self._sessions_created += 1
            return session

    def reset(self) -> None:
        """Forget the cached session (e.g. on shutdown)."""
        with self._lock:
            self._session = None
            self._instructions = None


def _preview(text: str | None, limit: int = 40) -> str | None:
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + "..."
