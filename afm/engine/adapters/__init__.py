# Engine backends
#
# Each adapter implements a common interface for:
#   - Loading the backend (model + tokenizer, or nothing for the placeholder)
#   - Reporting availability
#   - Creating sessions bound to system instructions
#   - Running generation (whole-text, and cumulative snapshots when supported)
#
# The engine uses adapters to stay backend-agnostic.

from .base import BaseAdapter, BaseSession, EngineUnavailableError

__all__ = ["BaseAdapter", "BaseSession", "EngineUnavailableError"]
