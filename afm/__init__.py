"""
AFM Server - an OpenAI-style Chat Completions gateway for a local text-generation engine.

The engine side lives here (`afm.engine`): adapters that wrap a concrete model,
the session manager that reuses engine sessions across requests, the prompt
translator, and the streaming delta emitter.

The HTTP side (wire codec, router, connection acceptor) lives under `apps/server`
and only talks to the engine through `afm.engine.chat_engine.ChatEngine`.

Quick Start:
    from afm.engine.chat_engine import ChatEngine
    from afm.engine.registry import get_adapter

    engine = ChatEngine(get_adapter("placeholder"))
    result = await engine.generate(request)  # {"content", "finish_reason", "usage", "error"}
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
