import io
import json

import pytest

from apps.cli.client import DEFAULT_URL, AfmClient, HttpError, chunk_text, iter_sse_data, iter_sse_json
from apps.cli.main import build_parser, main
from apps.cli.output import format_table


def test_sse_json_stops_on_done():
    stream = io.BytesIO(
        b"data: {\"x\": 1}\n\n"
        b"data: {\"y\": 2}\n\n"
        b"data: [DONE]\n\n"
        b"data: {\"z\": 3}\n\n"
    )
    assert list(iter_sse_json(stream)) == [{"x": 1}, {"y": 2}]


def test_sse_data_joins_multiline_events_and_ignores_other_fields():
    stream = io.BytesIO(b"event: message\r\ndata: a\r\ndata: b\r\n\r\n: comment\n\ndata: tail")
    assert list(iter_sse_data(stream)) == ["a\nb", "tail"]


def test_chunk_text():
    assert chunk_text({"choices": [{"delta": {"role": "assistant", "content": "hi"}}]}) == "hi"
    assert chunk_text({"choices": [{"delta": {}, "finish_reason": "stop"}]}) == ""
    assert chunk_text({"choices": []}) == ""


def test_http_error_message_uses_gateway_error_body():
    err = HttpError("HTTP error", url="http://x/v1/chat/completions", status_code=400, body='{"error":"bad"}')
    assert str(err) == "HTTP error (HTTP 400) [http://x/v1/chat/completions]: bad"
    assert str(HttpError("Failed to reach server")) == "Failed to reach server"


def test_format_table():
    table = format_table(["MODEL", "OWNED_BY"], [["apple-on-device", "apple"]])
    assert table.splitlines() == [
        "MODEL            OWNED_BY",
        "---------------  --------",
        "apple-on-device  apple",
    ]


def test_parser_defaults_and_chat_flags():
    parser = build_parser()
    args = parser.parse_args(["chat", "--system", "Be brief.", "--stream", "hello"])
    assert args.url == DEFAULT_URL
    assert args.command == "chat"
    assert args.prompt == "hello"
    assert args.system == "Be brief."
    assert args.stream is True
    assert args.temperature is None

    args = parser.parse_args(["--url", "http://example.invalid:9000", "status", "--json"])
    assert args.url == "http://example.invalid:9000"
    assert args.command == "status"
    assert args.json is True


def test_chat_payload(monkeypatch):
    sent = {}

    def fake_request_json(self, method, path, *, payload=None, timeout_s=None):
        sent.update(method=method, path=path, payload=payload)
        return {"choices": [{"message": {"role": "assistant", "content": "pong"}}]}

    monkeypatch.setattr(AfmClient, "request_json", fake_request_json)
    client = AfmClient(model="afm-test")
    result = client.chat([{"role": "user", "content": "ping"}], temperature=0.0)

    assert result["choices"][0]["message"]["content"] == "pong"
    assert sent["method"] == "POST"
    assert sent["path"] == "/v1/chat/completions"
    assert sent["payload"] == {
        "model": "afm-test",
        "messages": [{"role": "user", "content": "ping"}],
        "stream": False,
        "temperature": 0.0,
    }


def test_main_chat_prints_reply(monkeypatch, capsys):
    def fake_chat(self, messages, **kwargs):
        assert messages == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "ping"},
        ]
        return {"choices": [{"message": {"role": "assistant", "content": "pong"}}]}

    monkeypatch.setattr(AfmClient, "chat", fake_chat)
    assert main(["chat", "--system", "Be brief.", "ping"]) == 0
    assert capsys.readouterr().out == "pong\n"


def test_main_chat_streams_deltas(monkeypatch, capsys):
    def fake_chat(self, messages, **kwargs):
        assert kwargs["stream"] is True
        return iter(
            [
                {"choices": [{"delta": {"role": "assistant", "content": "po"}, "finish_reason": None}]},
                {"choices": [{"delta": {"content": "ng"}, "finish_reason": None}]},
                {"choices": [{"delta": {}, "finish_reason": "stop"}]},
            ]
        )

    monkeypatch.setattr(AfmClient, "chat", fake_chat)
    assert main(["chat", "--stream", "ping"]) == 0
    assert capsys.readouterr().out == "pong\n"


def test_main_status_reports_unreachable_server(monkeypatch, capsys):
    def fake_health(self):
        raise HttpError("Failed to reach server", url=self.base_url + "/health")

    monkeypatch.setattr(AfmClient, "health", fake_health)
    assert main(["--url", "http://127.0.0.1:1", "status"]) == 1
    assert "Failed to reach server" in capsys.readouterr().err


def test_main_status_json(monkeypatch, capsys):
    monkeypatch.setattr(AfmClient, "health", lambda self: {"status": "ok"})
    monkeypatch.setattr(
        AfmClient,
        "models",
        lambda self: [{"id": "apple-on-device", "object": "model", "created": 1, "owned_by": "apple"}],
    )
    assert main(["status", "--json"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["health"] == {"status": "ok"}
    assert out["models"][0]["id"] == "apple-on-device"


@pytest.mark.parametrize("argv", [[], ["status"]])
def test_main_defaults_to_status(monkeypatch, capsys, argv):
    monkeypatch.setattr(AfmClient, "health", lambda self: {"status": "ok"})
    monkeypatch.setattr(AfmClient, "models", lambda self: [])
    assert main(argv) == 0
    assert "(ok)" in capsys.readouterr().out
