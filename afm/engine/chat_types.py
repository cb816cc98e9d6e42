"""Core chat request/streaming event types.

These types are internal to the library and are intentionally decoupled from:
- the raw HTTP transport (wire codec / SSE framing)
- OpenAI request/response JSON envelopes

The gateway decodes JSON into these types and encodes results back out.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ChatMessage:
    """A normalized chat message.

    Notes:
    - `role` keeps the raw string; roles other than system/user/assistant are
      passed through without a label when building prompts.
    - `content` may be None; such messages are skipped when building prompts.
    """

    role: str
    content: str | None = None


@dataclass(frozen=True)
class ChatRequest:
    """Normalized internal chat request."""

    model: str
    messages: list[ChatMessage] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False


@dataclass(frozen=True)
class GenerationConfig:
    """Options derived from a request.

    `system_prompt` is lifted out of system-role messages and used as the
    engine session's instructions instead of being flattened into the prompt.
    """

    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(frozen=True)
class Usage:
    """Approximate token usage (characters / 4, not a real tokenizer count).

    `total_tokens` divides the combined character count once, so it can run a
    few tokens above `prompt_tokens + completion_tokens`, which round per
    message. Left unset it is that plain sum.
    """

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.total_tokens is None:
            object.__setattr__(self, "total_tokens", self.prompt_tokens + self.completion_tokens)


@dataclass(frozen=True)
class DeltaEvent:
    """Append-only text delta."""

    text: str

