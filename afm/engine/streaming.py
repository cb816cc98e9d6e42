"""Turn engine output into append-only text deltas.

Two modes:
- snapshot diff: the engine yields cumulative snapshots; each delta is the
  suffix beyond what was already emitted.
- whole-text fallback: the engine only returns the finished text; it is split
  into words and paced with a small delay to look like a stream.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Iterable, Iterator


WORD_DELAY_S = 0.05


class SnapshotDeltaEmitter:
    """Suffix subtraction over cumulative snapshots.

    Snapshots must be non-decreasing in length and prefix-compatible. That is
    not checked: a snapshot that rewrites earlier text yields a meaningless delta.
    """

    def __init__(self) -> None:
        self.last_emitted_length = 0

    def feed(self, snapshot: str) -> str | None:
        """Return the new suffix of `snapshot`, or None if nothing grew."""
        if len(snapshot) <= self.last_emitted_length:
            return None
        delta = snapshot[self.last_emitted_length :]
        self.last_emitted_length = len(snapshot)
        return delta


def snapshot_deltas(snapshots: Iterable[str]) -> Iterator[str]:
    emitter = SnapshotDeltaEmitter()
    for snapshot in snapshots:
        delta = emitter.feed(snapshot)
        if delta is not None:
            yield delta


def split_words(text: str) -> list[str]:
    """Split on spaces; every word but the last keeps one trailing space."""
    words = [w for w in text.split(" ") if w]
    return [w + " " if i < len(words) - 1 else w for i, w in enumerate(words)]


async def word_deltas(text: str, *, delay_s: float = WORD_DELAY_S) -> AsyncIterator[str]:
    """Yield `text` word by word with `delay_s` between words."""
    for i, word in enumerate(split_words(text)):
        if i and delay_s > 0:
            await asyncio.sleep(delay_s)
        yield word
