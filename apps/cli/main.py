"""`afm`: AFM Server CLI (HTTP client).

Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, Sequence

from apps.cli.client import DEFAULT_MODEL, DEFAULT_URL, AfmClient, HttpError, chunk_text
from apps.cli.output import format_table, print_json


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="afm", description="AFM Server CLI (HTTP client)")
    p.add_argument(
        "--url",
        default=DEFAULT_URL,
        help="Server base URL (default: %(default)s)",
    )
    p.add_argument("--model", default=DEFAULT_MODEL, help="Model id sent with chat requests (default: %(default)s)")

    sub = p.add_subparsers(dest="command")

    status = sub.add_parser("status", help="Check server health and list models")
    status.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    chat = sub.add_parser("chat", help="Send one chat completion")
    chat.add_argument("prompt", help="User message")
    chat.add_argument("--system", help="Optional system message")
    chat.add_argument("--temperature", type=float, default=None, help="Sampling temperature, 0-2")
    chat.add_argument("--max-tokens", type=int, default=None, help="Completion token cap")
    chat.add_argument("--stream", action="store_true", help="Stream the reply as it is generated")
    chat.add_argument("--json", action="store_true", help="Print the raw completion object")
    return p


def cmd_status(client: AfmClient, *, json_output: bool) -> int:
    health = client.health()
    models = client.models()
    if json_output:
        print_json({"health": health, "models": models})
        return 0

    print(f"server: {client.base_url} ({health.get('status', 'unknown')})")
    rows = [[str(m.get("id", "")), str(m.get("owned_by", "")), str(m.get("created", ""))] for m in models]
    print(format_table(["MODEL", "OWNED_BY", "CREATED"], rows))
    return 0


def _chat_messages(prompt: str, system: str | None) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


def cmd_chat(
    client: AfmClient,
    *,
    prompt: str,
    system: str | None,
    temperature: float | None,
    max_tokens: int | None,
    stream: bool,
    json_output: bool,
) -> int:
    messages = _chat_messages(prompt, system)
    if stream:
        for chunk in client.chat(messages, temperature=temperature, max_tokens=max_tokens, stream=True):
            sys.stdout.write(chunk_text(chunk))
            sys.stdout.flush()
        sys.stdout.write("\n")
        return 0

    result = client.chat(messages, temperature=temperature, max_tokens=max_tokens)
    if json_output:
        print_json(result)
        return 0
    choices = result.get("choices") or [{}]
    print((choices[0].get("message") or {}).get("content", ""))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    command = args.command or "status"
    client = AfmClient(base_url=args.url, model=args.model)
    try:
        if command == "status":
            return cmd_status(client, json_output=bool(getattr(args, "json", False)))
        if command == "chat":
            return cmd_chat(
                client,
                prompt=args.prompt,
                system=args.system,
                temperature=args.temperature,
                max_tokens=args.max_tokens,
                stream=bool(args.stream),
                json_output=bool(args.json),
            )
    except HttpError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    parser.error(f"Unknown command: {command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
