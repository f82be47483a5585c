from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
import requests

from src.pagesmith.domain.chat_models import Message
from src.pagesmith.services import generation
from src.pagesmith.services.generation import (
    GeminiChatClient,
    GenerationConfig,
    ProviderStreamError,
    ProviderUnavailable,
)
from src.pagesmith.services.history_adapter import adapt_turn
from .utils import sse_line


class FakeResponse:
    def __init__(self, status_code=200, lines=(), error=None, json_data=None, text=""):
        self.status_code = status_code
        self._lines = list(lines)
        self._error = error
        self._json = json_data
        self.text = text
        self.closed = False

    def iter_lines(self):
        for line in self._lines:
            yield line
        if self._error is not None:
            raise self._error

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def _client(session, **overrides):
    cfg = GenerationConfig(api_key=overrides.pop("api_key", "test-key"), **overrides)
    return GeminiChatClient(cfg, session=session)


def _history():
    return adapt_turn([Message(role="user", content="hi"), Message(role="user", content="a page")])


def test_stream_yields_text_of_each_sse_event():
    resp = FakeResponse(lines=[sse_line("Hel"), b"", sse_line("lo"), b"data: [DONE]"])
    session = FakeSession(resp)
    turn = _history()

    stream = _client(session).start_chat(turn.history).send_message_stream(turn.prompt)

    assert list(stream) == ["Hel", "lo"]
    assert stream.fragments == 2
    assert stream.closed and resp.closed


def test_request_targets_streaming_endpoint_with_full_history():
    session = FakeSession(FakeResponse(lines=[sse_line("x")]))
    turn = _history()
    client = _client(session, model="gemini-test", base_url="https://example.test/v1beta/", read_timeout=30.0)

    client.open_stream(turn.history, turn.prompt)

    url, kwargs = session.calls[0]
    assert url == "https://example.test/v1beta/models/gemini-test:streamGenerateContent?alt=sse"
    assert kwargs["stream"] is True
    assert kwargs["timeout"] == (5.0, 30.0)
    assert kwargs["headers"]["x-goog-api-key"] == "test-key"
    contents = kwargs["json"]["contents"]
    assert len(contents) == len(turn.history) + 1
    assert [c["role"] for c in contents] == ["user", "model", "user", "user"]
    assert contents[-1] == {"role": "user", "parts": [{"text": "a page"}]}
    assert kwargs["json"]["generationConfig"]["temperature"] == client.config.temperature


def test_thought_and_empty_parts_are_skipped():
    resp = FakeResponse(
        lines=[
            sse_line("thinking...", thought=True),
            sse_line(""),
            b": keep-alive",
            b"data: not json",
            sse_line("<h1>"),
        ]
    )
    stream = _client(FakeSession(resp)).open_stream([], "p")
    assert list(stream) == ["<h1>"]


def test_missing_api_key_is_unavailable_without_network():
    session = FakeSession(FakeResponse())
    with pytest.raises(ProviderUnavailable):
        _client(session, api_key=None).open_stream([], "p")
    assert session.calls == []


def test_non_200_status_is_unavailable_and_closes_response():
    resp = FakeResponse(status_code=503, json_data={"error": {"message": "overloaded"}})
    with pytest.raises(ProviderUnavailable) as exc:
        _client(FakeSession(resp)).open_stream([], "p")
    assert "overloaded" in str(exc.value)
    assert resp.closed
    assert generation._BREAKER_STATE["fails"] == 1


def test_connection_error_is_unavailable():
    session = FakeSession(error=requests.exceptions.ConnectionError("refused"))
    with pytest.raises(ProviderUnavailable):
        _client(session).open_stream([], "p")


def test_broken_stream_raises_after_delivered_fragments():
    resp = FakeResponse(
        lines=[sse_line("one"), sse_line("two")],
        error=requests.exceptions.ChunkedEncodingError("reset"),
    )
    stream = _client(FakeSession(resp)).open_stream([], "p")
    got = []
    with pytest.raises(ProviderStreamError):
        for frag in stream:
            got.append(frag)
    assert got == ["one", "two"]
    assert stream.closed


def test_error_payload_mid_stream_raises():
    err = ("data: " + json.dumps({"error": {"code": 500, "message": "internal"}})).encode()
    stream = _client(FakeSession(FakeResponse(lines=[sse_line("a"), err, sse_line("b")]))).open_stream([], "p")
    assert next(stream) == "a"
    with pytest.raises(ProviderStreamError):
        next(stream)
    assert stream.closed


def test_blocked_prompt_raises():
    blocked = ("data: " + json.dumps({"promptFeedback": {"blockReason": "SAFETY"}})).encode()
    stream = _client(FakeSession(FakeResponse(lines=[blocked]))).open_stream([], "p")
    with pytest.raises(ProviderStreamError):
        next(stream)


def test_closed_stream_stops_quietly():
    resp = FakeResponse(lines=[sse_line("a"), sse_line("b")])
    stream = _client(FakeSession(resp)).open_stream([], "p")
    assert next(stream) == "a"
    stream.close()
    stream.close()
    assert list(stream) == []
    assert resp.closed


def test_deadline_applies_while_skipping_textless_lines(monkeypatch):
    resp = FakeResponse(lines=[sse_line("pondering", thought=True)] * 5 + [sse_line("late")])
    stream = _client(FakeSession(resp)).open_stream([], "p")
    clock = SimpleNamespace(current=100.0)

    def tick():
        clock.current += 1.0
        return clock.current

    monkeypatch.setattr(generation, "time", SimpleNamespace(monotonic=tick, time=tick))
    stream.set_deadline(103.0)

    with pytest.raises(ProviderStreamError):
        next(stream)
    assert stream.closed and resp.closed
    assert stream.fragments == 0


def test_future_deadline_does_not_interrupt_stream():
    resp = FakeResponse(lines=[sse_line("a", thought=True), sse_line("b")])
    stream = _client(FakeSession(resp)).open_stream([], "p")
    stream.set_deadline(float("inf"))
    assert list(stream) == ["b"]


def test_breaker_opens_after_threshold(monkeypatch):
    monkeypatch.setattr(generation, "_BREAKER_THRESHOLD", 2, raising=False)
    monkeypatch.setattr(generation, "_BREAKER_COOLDOWN", 5.0, raising=False)
    clock = SimpleNamespace(current=100.0)
    monkeypatch.setattr(generation, "time", SimpleNamespace(time=lambda: clock.current))

    failing = FakeSession(error=requests.exceptions.ConnectTimeout("slow"))
    client = _client(failing)
    for _ in range(2):
        with pytest.raises(ProviderUnavailable):
            client.open_stream([], "p")
    assert generation._breaker_open()

    # While open, no request is attempted
    with pytest.raises(ProviderUnavailable):
        client.open_stream([], "p")
    assert len(failing.calls) == 2

    clock.current += 10.0
    ok = FakeSession(FakeResponse(lines=[sse_line("back")]))
    assert list(_client(ok).open_stream([], "p")) == ["back"]
    assert generation._BREAKER_STATE == {"fails": 0, "opened_at": 0.0}


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "k")
    monkeypatch.setenv("GEMINI_MODEL", "gemini-x")
    monkeypatch.setenv("PAGESMITH_LLM_READ_TIMEOUT", "12")
    cfg = GenerationConfig.from_env()
    assert cfg.api_key == "k"
    assert cfg.model == "gemini-x"
    assert cfg.read_timeout == 12.0
    assert cfg.stream_url.endswith("/models/gemini-x:streamGenerateContent?alt=sse")


def test_get_generation_client_is_process_wide(monkeypatch):
    monkeypatch.setattr(generation, "_client", None)
    monkeypatch.setenv("GEMINI_API_KEY", "k")
    first = generation.get_generation_client()
    assert isinstance(first, GeminiChatClient)
    assert generation.get_generation_client() is first
