"""AFM gateway entrypoint (raw HTTP + OpenAI-style Chat Completions).

Example:
    python -m apps.server.main --backend transformers --model Qwen/Qwen2.5-0.5B-Instruct --port 11535
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any

from afm.engine.chat_engine import ChatEngine
from afm.engine.registry import create_adapter, list_backends

from apps.server.app import DEFAULT_MODEL_ID, DEFAULT_OWNED_BY, create_app
from apps.server.server import DEFAULT_HOST, DEFAULT_PORT, BindError, GatewayConfig, GatewayServer, ServerStatus
from apps.server.wire import MAX_BODY_BYTES

logger = logging.getLogger("apps.server")

LOG_FORMAT = "%(levelname)s %(asctime)s [%(name)s:%(lineno)d] %(message)s"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise SystemExit(f"{name} must be an integer (got {raw!r})")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="AFM Server: OpenAI-compatible gateway to an on-device model")
    p.add_argument("--host", default=os.environ.get("AFM_HOST", DEFAULT_HOST), help=f"Bind host (default: {DEFAULT_HOST})")
    p.add_argument("--port", type=int, default=_env_int("AFM_PORT", DEFAULT_PORT), help=f"Bind port (default: {DEFAULT_PORT})")

    p.add_argument(
        "--backend",
        default=os.environ.get("AFM_BACKEND", "placeholder"),
        choices=list_backends(),
        help="Engine backend (default: placeholder)",
    )
    p.add_argument("--model", default=os.environ.get("AFM_MODEL"), help="Model path or HF repo id (transformers backend)")
    p.add_argument("--device", default=None, help="Device for the transformers backend (default: best available)")
    p.add_argument("--dtype", default=None, help="Torch dtype: float16|bfloat16|float32 (default: model default)")
    p.add_argument("--max-new-tokens", type=int, default=512, help="Generation cap when a request sets none")

    p.add_argument("--model-id", default=DEFAULT_MODEL_ID, help=f"Advertised model id (default: {DEFAULT_MODEL_ID})")
    p.add_argument("--owned-by", default=DEFAULT_OWNED_BY, help=f"Advertised model owner (default: {DEFAULT_OWNED_BY})")

    p.add_argument("--max-body-bytes", type=int, default=MAX_BODY_BYTES, help="Reject larger request bodies")
    p.add_argument(
        "--max-concurrency",
        type=int,
        default=0,
        help="Max in-flight /v1/chat/completions requests (0 = unlimited)",
    )
    p.add_argument(
        "--status-interval",
        type=float,
        default=0.0,
        help="Log server status changes every N seconds (0 = off)",
    )
    p.add_argument(
        "--log-level",
        default=os.environ.get("AFM_LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    return p.parse_args(argv)


def _dtype_from_string(dtype: str | None) -> Any:
    if dtype is None:
        return None
    try:
        import torch
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("torch is required for --dtype") from exc

    dt = dtype.strip().lower()
    if dt in {"fp16", "float16", "half"}:
        return torch.float16
    if dt in {"bf16", "bfloat16"}:
        return torch.bfloat16
    if dt in {"fp32", "float32"}:
        return torch.float32
    raise ValueError(f"Unknown dtype: {dtype!r}")


def _load_engine(args: argparse.Namespace) -> ChatEngine:
    if args.backend == "transformers":
        if not args.model:
            raise SystemExit("--model is required with --backend transformers")
        print(
            "[server] loading model... "
            f"model={args.model!r} device={args.device!r} dtype={args.dtype!r}",
            flush=True,
        )
        adapter = create_adapter(
            "transformers",
            args.model,
            device=args.device,
            dtype=_dtype_from_string(args.dtype),
            max_new_tokens=args.max_new_tokens,
        )
        print("[server] model loaded", flush=True)
    else:
        adapter = create_adapter(args.backend)
        print(f"[server] using {args.backend} backend", flush=True)
    return ChatEngine(adapter)


def _log_status(status: ServerStatus) -> None:
    logger.info(
        "status: state=%s port=%d model_available=%s requests=%d connections=%d",
        status.state.value,
        status.port,
        status.model_available,
        status.request_count,
        status.active_connections,
    )


async def _serve(server: GatewayServer, *, status_interval: float) -> None:
    await server.start()
    print(f"[server] listening on {server.url}", flush=True)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    watcher: asyncio.Task | None = None
    if status_interval > 0:
        watcher = asyncio.create_task(server.watch_status(status_interval, _log_status))

    try:
        await stop.wait()
    finally:
        if watcher is not None:
            watcher.cancel()
        print("[server] shutting down", flush=True)
        await server.stop()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(level=str(args.log_level).upper(), format=LOG_FORMAT)

    engine = _load_engine(args)
    app = create_app(
        engine=engine,
        model_id=args.model_id,
        owned_by=args.owned_by,
        max_body_bytes=args.max_body_bytes,
        http_max_concurrency=None if args.max_concurrency <= 0 else int(args.max_concurrency),
    )
    server = GatewayServer(
        app,
        config=GatewayConfig(host=args.host, port=args.port, max_body_bytes=args.max_body_bytes),
        engine=engine,
    )

    try:
        asyncio.run(_serve(server, status_interval=args.status_interval))
    except BindError as exc:
        print(f"[server] {exc}", file=sys.stderr, flush=True)
        sys.exit(1)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
