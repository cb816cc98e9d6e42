"""Chat messages -> single engine prompt.

The engine's native interface is one prompt string plus optional separate
instructions, not a structured conversation, so the chat history is flattened
into labeled segments here.
"""

from __future__ import annotations

from typing import Sequence

from .chat_types import ChatMessage, ChatRequest, GenerationConfig, Usage
from .types import EngineOptions


_ROLE_LABELS = {
    "system": "System:",
    "user": "User:",
    "assistant": "Assistant:",
}

# Rough characters-per-token ratio used for the `usage` block.
CHARS_PER_TOKEN = 4


def extract_system_prompt(messages: Sequence[ChatMessage]) -> str | None:
    """Join the content of every system message, or None if there is none."""
    parts = [m.content for m in messages if m.role == "system" and m.content]
    if not parts:
        return None
    return "\n\n".join(parts)


def build_prompt(messages: Sequence[ChatMessage], *, system_prompt: str | None = None) -> str:
    """Flatten messages into one prompt string.

    Each message with non-empty content becomes `"<Label> <content>\\n\\n"`
    (unknown roles contribute their bare content). Messages with absent or empty
    content are skipped, and so are system messages once `system_prompt` has been
    lifted out of them.
    """
    segments: list[str] = []
    for msg in messages:
        if not msg.content:
            continue
        if msg.role == "system" and system_prompt is not None:
            continue
        label = _ROLE_LABELS.get(msg.role)
        if label is None:
            segments.append(f"{msg.content}\n\n")
        else:
            segments.append(f"{label} {msg.content}\n\n")
    return "".join(segments).strip()


def generation_config(request: ChatRequest) -> GenerationConfig:
    return GenerationConfig(
        system_prompt=extract_system_prompt(request.messages),
        temperature=request.temperature,
        max_tokens=request.max_tokens,
    )


def map_temperature(temperature: float | None) -> tuple[float | None, bool]:
    """Map an OpenAI 0-2 temperature onto the engine's 0-1 scale.

    Returns (engine_temperature, greedy). Absent stays absent; an exact 0 after
    mapping requests greedy decoding.
    """
    if temperature is None:
        return None, False
    mapped = min(max(float(temperature) / 2.0, 0.0), 1.0)
    return mapped, mapped == 0.0


def engine_options(config: GenerationConfig) -> EngineOptions:
    temperature, greedy = map_temperature(config.temperature)
    return EngineOptions(temperature=temperature, greedy=greedy, max_tokens=config.max_tokens)


def estimate_tokens(text: str | None) -> int:
    """Heuristic token count: characters // 4. Not a tokenizer."""
    if not text:
        return 0
    return len(text) // CHARS_PER_TOKEN


def estimate_usage(messages: Sequence[ChatMessage], completion: str) -> Usage:
    prompt_tokens = sum(estimate_tokens(m.content) for m in messages)
    prompt_chars = sum(len(m.content) for m in messages if m.content)
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=estimate_tokens(completion),
        total_tokens=(prompt_chars + len(completion or "")) // CHARS_PER_TOKEN,
    )
