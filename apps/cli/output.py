from __future__ import annotations

import json
from typing import Any, Iterable, Sequence


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """Left-aligned plain-text table with a dashed rule under the header row.

    Cells are stringified; columns beyond the header count are appended unpadded.
    """
    body = [[str(cell) for cell in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in body:
        for col, cell in enumerate(row[: len(widths)]):
            widths[col] = max(widths[col], len(cell))

    def render(cells: Sequence[str]) -> str:
        padded = [cell.ljust(widths[col]) if col < len(widths) else cell for col, cell in enumerate(cells)]
        return "  ".join(padded).rstrip()

    lines = [render(list(headers)), render(["-" * w for w in widths])]
    lines.extend(render(row) for row in body)
    return "\n".join(lines)
