# Model-agnostic generation engine
#
# This package wraps a local text-generation capability behind a small,
# HTTP-independent interface.
#
# Key components:
#   - adapters/       Engine backends (placeholder, transformers)
#   - registry.py     Maps backend names to adapters
#   - chat_types.py   Normalized chat request / stream event types
#   - types.py        Engine option / metadata types
#   - prompt.py       Chat messages -> flattened prompt + options
#   - sessions.py     Reusable engine session keyed by instructions
#   - streaming.py    Snapshot / whole-text -> append-only deltas
#   - chat_engine.py  Async facade used by the HTTP gateway
