"""Base adapter interface for engine backends."""

from abc import ABC, abstractmethod
from typing import Any, Iterator

from ..types import EngineOptions


class EngineUnavailableError(RuntimeError):
    """Raised when the backend cannot serve a generation call."""


class BaseSession(ABC):
    """
    An engine-side conversational context bound to fixed system instructions.

    Sessions are created by an adapter and owned by the session manager; the
    instructions never change for the lifetime of a session.
    """

    def __init__(self, instructions: str | None) -> None:
        self._instructions = instructions

    @property
    def instructions(self) -> str | None:
        return self._instructions

    @abstractmethod
    def respond(self, prompt: str, options: EngineOptions) -> str:
        """
        Generate a full completion for the given prompt.

        Args:
            prompt: Flattened prompt text.
            options: Mapped generation options.

        Returns:
            Generated text (excluding the prompt).
        """
        pass

    def stream_response(self, prompt: str, options: EngineOptions) -> Iterator[str]:
        """
        Stream cumulative text snapshots for the given prompt.

        Each yielded string must extend the previous one (prefix-compatible and
        non-decreasing in length). Adapters with `supports_streaming = False`
        need not implement this.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support streaming")


class BaseAdapter(ABC):
    """
    Abstract base class for engine backends.

    Each backend implements this interface so the gateway can generate text
    without knowing model-specific details.
    """

    supports_streaming: bool = False

    @abstractmethod
    def load(self, model_path: str | None = None, **kwargs) -> None:
        """
        Load the backend.

        Args:
            model_path: Local path or HF Hub model identifier (backend-specific).
            **kwargs: Backend-specific loading options (dtype, device, etc.).
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Return True when the backend can currently serve generation calls."""
        pass

    @abstractmethod
    def create_session(self, instructions: str | None = None) -> BaseSession:
        """
        Create a fresh session bound to `instructions`.

        Raises:
            EngineUnavailableError: If the backend is not ready.
        """
        pass

    @property
    @abstractmethod
    def model_info(self) -> dict[str, Any]:
        """
        Return metadata about the backend.

        Returns:
            Dict with keys like 'model_path', 'model_family', 'device', etc.
        """
        pass

    def unload(self) -> None:
        """
        Unload the backend and free resources.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass
