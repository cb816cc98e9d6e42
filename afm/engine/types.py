"""Engine option and metadata types.

These types are used internally by the engine and adapters.
They are independent of any HTTP/API layer.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class EngineOptions:
    """Per-call generation options, already mapped to the engine's scale.

    `temperature` is on the engine's 0-1 scale. `greedy` is set when the caller
    asked for temperature 0, which is distinct from not asking at all
    (`temperature is None`, engine default sampling).
    """

    temperature: float | None = None
    greedy: bool = False
    max_tokens: int | None = None


@dataclass
class ModelInfo:
    """Information about a loaded engine backend."""

    model_path: str | None
    model_family: str
    device: str = "cpu"
    dtype: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
