import threading

import pytest

from afm.engine.adapters.base import BaseAdapter, BaseSession
from afm.engine.adapters.placeholder import PlaceholderAdapter, placeholder_reply
from afm.engine.chat_engine import ChatEngine, EngineConfig
from afm.engine.chat_types import ChatMessage, ChatRequest


class RecordingSession(BaseSession):
    def __init__(self, adapter, instructions):
        super().__init__(instructions)
        self._adapter = adapter

    def respond(self, prompt, options):
        self._adapter.calls.append((self.instructions, prompt, options))
        return "done"

    def stream_response(self, prompt, options):
        self._adapter.calls.append((self.instructions, prompt, options))
        self._adapter.worker_threads.add(threading.current_thread().name)
        for snapshot in self._adapter.snapshots:
            yield snapshot
        if self._adapter.error is not None:
            raise self._adapter.error


class RecordingAdapter(BaseAdapter):
    def __init__(self, *, streaming=False, snapshots=(), error=None):
        self.supports_streaming = streaming
        self.snapshots = list(snapshots)
        self.error = error
        self.calls = []
        self.worker_threads = set()
        self.unloaded = False

    def load(self, model_path=None, **kwargs):
        pass

    def is_available(self):
        return True

    def create_session(self, instructions=None):
        return RecordingSession(self, instructions)

    @property
    def model_info(self):
        return {"model_family": "recording"}

    def unload(self):
        self.unloaded = True


def _request(*messages, **kwargs):
    return ChatRequest(model="m", messages=[ChatMessage(role=r, content=c) for r, c in messages], **kwargs)


def _engine(adapter):
    return ChatEngine(adapter, config=EngineConfig(word_delay_s=0))


@pytest.mark.anyio
async def test_generate_with_placeholder():
    engine = _engine(PlaceholderAdapter())
    result = await engine.generate(_request(("user", "Hello there")))
    assert result["content"] == placeholder_reply("Hello there")
    assert result["finish_reason"] == "stop"
    assert result["error"] is None
    assert result["usage"].prompt_tokens == len("Hello there") // 4


@pytest.mark.anyio
async def test_placeholder_echoes_whole_multi_paragraph_user_turn():
    engine = _engine(PlaceholderAdapter())
    result = await engine.generate(
        _request(
            ("user", "first"),
            ("assistant", "ok"),
            ("user", "para one\n\npara two"),
            ("assistant", "noted"),
        )
    )
    assert result["content"] == placeholder_reply("para one\n\npara two")


@pytest.mark.anyio
async def test_generate_passes_instructions_prompt_and_options():
    adapter = RecordingAdapter()
    engine = _engine(adapter)
    request = _request(("system", "Be brief."), ("user", "Hi"), temperature=0.0, max_tokens=16)

    await engine.generate(request)

    instructions, prompt, options = adapter.calls[0]
    assert instructions == "Be brief."
    assert prompt == "User: Hi"
    assert options.greedy is True
    assert options.temperature == 0.0
    assert options.max_tokens == 16


@pytest.mark.anyio
async def test_sessions_are_reused_across_requests():
    engine = _engine(RecordingAdapter())
    await engine.generate(_request(("system", "A"), ("user", "1")))
    await engine.generate(_request(("system", "A"), ("user", "2")))
    assert engine.sessions.sessions_created == 1

    await engine.generate(_request(("user", "3")))
    assert engine.sessions.sessions_created == 2


@pytest.mark.anyio
async def test_generate_folds_unavailable_engine_into_text():
    engine = _engine(PlaceholderAdapter(available=False))
    result = await engine.generate(_request(("user", "hi")))
    assert result["content"] == "Error: Placeholder engine is marked unavailable"
    assert result["error"] == "Placeholder engine is marked unavailable"
    assert result["finish_reason"] == "stop"
    assert engine.is_available() is False


@pytest.mark.anyio
async def test_astream_word_fallback():
    engine = _engine(PlaceholderAdapter())
    deltas = [e.text async for e in engine.astream_deltas(_request(("user", "ping")))]
    assert "".join(deltas) == placeholder_reply("ping")
    assert all(d.endswith(" ") for d in deltas[:-1])


@pytest.mark.anyio
async def test_astream_snapshot_mode_runs_on_worker_thread():
    adapter = RecordingAdapter(streaming=True, snapshots=["Hi", "Hi there", "Hi there!"])
    engine = _engine(adapter)
    deltas = [e.text async for e in engine.astream_deltas(_request(("user", "x")))]
    assert deltas == ["Hi", " there", "!"]
    assert threading.current_thread().name not in adapter.worker_threads


@pytest.mark.anyio
async def test_astream_error_becomes_final_delta():
    adapter = RecordingAdapter(streaming=True, snapshots=["partial"], error=RuntimeError("lost"))
    engine = _engine(adapter)
    deltas = [e.text async for e in engine.astream_deltas(_request(("user", "x")))]
    assert deltas == ["partial", "Error: lost"]


@pytest.mark.anyio
async def test_astream_consumer_can_stop_early():
    adapter = RecordingAdapter(streaming=True, snapshots=["a", "ab", "abc"])
    engine = _engine(adapter)
    stream = engine.astream_deltas(_request(("user", "x")))
    first = await stream.__anext__()
    assert first.text == "a"
    await stream.aclose()


def test_shutdown_unloads_adapter():
    adapter = RecordingAdapter()
    engine = _engine(adapter)
    engine.shutdown()
    assert adapter.unloaded is True
    assert engine.model_info == {"model_family": "recording"}
    assert engine.supports_streaming is False
