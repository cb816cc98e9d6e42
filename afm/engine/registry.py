"""Engine backend registry.

Maps backend names (the `--backend` flag) to adapter classes.
"""

from typing import Any, Type

from .adapters.base import BaseAdapter
from .adapters.placeholder import PlaceholderAdapter
from .adapters.transformers import TransformersAdapter

_BACKENDS: dict[str, Type[BaseAdapter]] = {
    "placeholder": PlaceholderAdapter,
    "transformers": TransformersAdapter,
}


def get_adapter(backend: str) -> BaseAdapter:
    """Instantiate (but do not load) the adapter registered under `backend`.

    Raises:
        ValueError: If the backend is not registered.
    """
    try:
        adapter_cls = _BACKENDS[backend]
    except KeyError:
        available = ", ".join(sorted(_BACKENDS))
        raise ValueError(f"Unknown backend: {backend!r}. Available: {available}") from None
    return adapter_cls()


def create_adapter(backend: str, model_path: str | None = None, **load_kwargs: Any) -> BaseAdapter:
    """Instantiate and load a backend in one step."""
    adapter = get_adapter(backend)
    adapter.load(model_path, **load_kwargs)
    return adapter


def register_adapter(backend: str, adapter_cls: Type[BaseAdapter]) -> None:
    if not issubclass(adapter_cls, BaseAdapter):
        raise TypeError(f"{adapter_cls!r} must inherit from BaseAdapter")
    _BACKENDS[backend] = adapter_cls


def list_backends() -> list[str]:
    return sorted(_BACKENDS)
