"""Adapter for local Hugging Face causal language models."""

from __future__ import annotations

import threading
from dataclasses import asdict
from typing import TYPE_CHECKING, Any, Iterator

from ..types import EngineOptions, ModelInfo
from .base import BaseAdapter, BaseSession, EngineUnavailableError

if TYPE_CHECKING:
    import torch


DEFAULT_MAX_NEW_TOKENS = 512


class TransformersSession(BaseSession):
    """Session bound to system instructions; encodes prompts with them as a system turn."""

    def __init__(self, adapter: "TransformersAdapter", instructions: str | None) -> None:
        super().__init__(instructions)
        self._adapter = adapter

    def respond(self, prompt: str, options: EngineOptions) -> str:
        input_ids = self._adapter.encode(prompt, instructions=self.instructions)
        return self._adapter.generate(input_ids, options)

    def stream_response(self, prompt: str, options: EngineOptions) -> Iterator[str]:
        input_ids = self._adapter.encode(prompt, instructions=self.instructions)
        yield from self._adapter.stream_snapshots(input_ids, options)


class TransformersAdapter(BaseAdapter):
    """
    Adapter for `AutoModelForCausalLM` checkpoints.

    Thread Safety:
        The underlying model is NOT thread-safe. Generation calls are serialized
        with an internal lock (single-flight); concurrent requests queue up.

    Example:
        >>> adapter = TransformersAdapter()
        >>> adapter.load("Qwen/Qwen2.5-0.5B-Instruct", device="cpu")
        >>> session = adapter.create_session("You are terse.")
        >>> for snapshot in session.stream_response("User: Hi", EngineOptions()):
        ...     print(snapshot)
    """

    supports_streaming = True

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._device: str = "cpu"
        self._dtype = None
        self._max_new_tokens: int = DEFAULT_MAX_NEW_TOKENS
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def model(self):
        """Access the underlying model (for advanced use cases)."""
        return self._model

    @property
    def tokenizer(self):
        """Access the tokenizer."""
        return self._tokenizer

    @property
    def model_info(self) -> dict[str, Any]:
        info = ModelInfo(
            model_path=self._model_path,
            model_family="transformers",
            device=self._device,
            dtype=None if self._dtype is None else str(self._dtype),
            extra={"loaded": self._model is not None, "max_new_tokens": self._max_new_tokens},
        )
        return asdict(info)

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str | None = None, **kwargs) -> None:
        """Load a causal LM and its tokenizer.

        Args:
            model_path: Path to the model (local or HF hub).
            device: Device / device_map (default: best available).
            dtype: Torch dtype (default: model default).
            max_new_tokens: Generation cap used when a request sets none (default: 512).
            trust_remote_code: Forwarded to from_pretrained() (default: False).
            **kwargs: Additional kwargs passed to from_pretrained().
        """
        if not model_path:
            raise ValueError("TransformersAdapter.load() requires a model path")

        from ...runtime import default_device, is_transformers_available

        if not is_transformers_available():
            raise EngineUnavailableError("The transformers backend needs `torch` and `transformers` installed")

        from transformers import AutoModelForCausalLM, AutoTokenizer

        self._model_path = model_path
        self._device = kwargs.pop("device", None) or default_device()
        self._dtype = kwargs.pop("dtype", None)
        self._max_new_tokens = int(kwargs.pop("max_new_tokens", DEFAULT_MAX_NEW_TOKENS))
        trust_remote_code = bool(kwargs.pop("trust_remote_code", False))

        self._tokenizer = AutoTokenizer.from_pretrained(
            model_path,
            trust_remote_code=trust_remote_code,
        )
        model_kwargs: dict[str, Any] = dict(kwargs)
        if self._dtype is not None:
            model_kwargs["torch_dtype"] = self._dtype
        self._model = AutoModelForCausalLM.from_pretrained(
            model_path,
            trust_remote_code=trust_remote_code,
            **model_kwargs,
        )
        self._model.to(self._device)
        self._model.eval()

    def unload(self) -> None:
        """Unload the model and free accelerator memory."""
        import gc

        with self._lock:
            self._model = None
            self._tokenizer = None

        gc.collect()
        from ...runtime import is_cuda_available

        if is_cuda_available():
            import torch

            torch.cuda.empty_cache()

    def is_available(self) -> bool:
        return self._model is not None and self._tokenizer is not None

    def create_session(self, instructions: str | None = None) -> BaseSession:
        if not self.is_available():
            raise EngineUnavailableError("No model loaded")
        return TransformersSession(self, instructions)

    # -------------------------------------------------------------------------
    # Encoding
    # -------------------------------------------------------------------------

    def encode(self, prompt: str, *, instructions: str | None = None) -> torch.Tensor:
        """Tokenize a prompt, placing `instructions` in a system turn when the tokenizer has a chat template."""
        if not self.is_available():
            raise EngineUnavailableError("No model loaded")

        tok = self._tokenizer
        if getattr(tok, "chat_template", None):
            messages: list[dict[str, str]] = []
            if instructions is not None:
                messages.append({"role": "system", "content": instructions})
            messages.append({"role": "user", "content": prompt})
            input_ids = tok.apply_chat_template(messages, add_generation_prompt=True, return_tensors="pt")
            if not hasattr(input_ids, "shape"):
                # Newer tokenizers return a BatchEncoding.
                input_ids = input_ids["input_ids"]
        else:
            text = prompt if instructions is None else f"{instructions}\n\n{prompt}"
            input_ids = tok.encode(f"{text}\n\nAssistant:", return_tensors="pt")
        return input_ids.to(self._model.device)

    def _generate_kwargs(self, options: EngineOptions) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "max_new_tokens": int(options.max_tokens) if options.max_tokens is not None else self._max_new_tokens,
        }
        if options.greedy:
            kwargs["do_sample"] = False
        elif options.temperature is not None:
            kwargs["do_sample"] = True
            kwargs["temperature"] = float(options.temperature)

        tok = self._tokenizer
        pad_token_id = getattr(tok, "pad_token_id", None)
        if pad_token_id is None:
            pad_token_id = getattr(tok, "eos_token_id", None)
        if pad_token_id is not None:
            kwargs["pad_token_id"] = pad_token_id
        return kwargs

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate(self, input_ids: torch.Tensor, options: EngineOptions) -> str:
        """Generate a full completion (blocking)."""
        import torch

        prompt_len = input_ids.shape[1]
        with self._lock:
            if self._model is None:
                raise EngineUnavailableError("No model loaded")
            with torch.no_grad():
                output = self._model.generate(input_ids=input_ids, **self._generate_kwargs(options))
        return self._tokenizer.decode(output[0, prompt_len:], skip_special_tokens=True)

    def stream_snapshots(self, input_ids: torch.Tensor, options: EngineOptions) -> Iterator[str]:
        """Yield cumulative decoded text after each generated token.

        Note: Threading is required because HF's generate() is blocking.
        We run it in a background thread and receive token ids via a queue.
        """
        import queue

        import torch
        from transformers.generation.streamers import BaseStreamer

        token_queue: queue.Queue[Any] = queue.Queue()
        prompt_len = input_ids.shape[1]
        end_signaled = threading.Event()

        class _TokenStreamer(BaseStreamer):
            def __init__(self):
                self._generated_count = 0

            def put(self, value):
                if value.dim() == 1:
                    token_queue.put(int(value[0]))
                    self._generated_count += 1
                else:
                    # First call carries the prompt (and nothing past it).
                    new_tokens = value[0, prompt_len + self._generated_count :]
                    for i in range(new_tokens.shape[0]):
                        token_queue.put(int(new_tokens[i]))
                        self._generated_count += 1

            def end(self):
                if not end_signaled.is_set():
                    end_signaled.set()
                    token_queue.put(None)

        streamer = _TokenStreamer()
        generate_kwargs = self._generate_kwargs(options)

        def _run_generate() -> None:
            try:
                with self._lock:
                    if self._model is None:
                        raise EngineUnavailableError("No model loaded")
                    with torch.no_grad():
                        self._model.generate(input_ids=input_ids, streamer=streamer, **generate_kwargs)
            except Exception as e:
                token_queue.put(e)
            finally:
                streamer.end()

        thread = threading.Thread(target=_run_generate, name="afm-transformers-gen", daemon=True)
        thread.start()

        token_ids: list[int] = []
        emitted = ""
        try:
            while True:
                item = token_queue.get()
                if item is None:
                    break
                if isinstance(item, BaseException):
                    raise item
                token_ids.append(item)
                snapshot = self._tokenizer.decode(token_ids, skip_special_tokens=True)
                # Hold back decodes that end mid-character or rewrite earlier text.
                if snapshot.endswith("\ufffd") or not snapshot.startswith(emitted):
                    continue
                if len(snapshot) > len(emitted):
                    emitted = snapshot
                    yield snapshot
        finally:
            thread.join()
