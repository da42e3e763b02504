import pytest

from tutor_core.domain.exceptions import NetworkError, RateLimitError, ValidationError
from tutor_core.domain.models import ChatMessage, ChatRequest
from tutor_core.providers.local_runtime import LocalServerRuntime


class SettingsStub:
    inference_base_url = "http://127.0.0.1:8000/v1/"
    inference_api_key = None
    http_timeout = 1.0


class FakeResponse:
    def __init__(self, status_code=200, lines=None, payload=None):
        self.status_code = status_code
        self._lines = list(lines or [])
        self._payload = payload
        self.text = "error body"

    def iter_lines(self):
        for line in self._lines:
            yield line

    def json(self):
        return self._payload

    def read(self):
        return b""


class StreamContext:
    def __init__(self, response):
        self._response = response

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        return False


def _client_class(captured, response):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def get(self, url, **kw):
            captured["get_url"] = url
            return response

        def stream(self, method, url, **kw):
            captured["method"] = method
            captured["url"] = url
            captured["json"] = kw.get("json")
            captured["headers"] = kw.get("headers")
            return StreamContext(response)

    return Client


def test_stream_chat_yields_text_deltas(monkeypatch):
    lines = [
        'data: {"choices": [{"index": 0, "delta": {"role": "assistant"}}]}',
        'data: {"choices": [{"index": 0, "delta": {"content": "Hi"}}]}',
        "",
        "data: not-json",
        'data: {"choices": [{"index": 0, "delta": {"content": " there"}, "finish_reason": "stop"}]}',
        "data: [DONE]",
    ]
    captured = {}
    monkeypatch.setattr("httpx.Client", _client_class(captured, FakeResponse(lines=lines)))
    runtime = LocalServerRuntime(SettingsStub())
    req = ChatRequest(
        model="mid-model",
        messages=[
            ChatMessage(role="system", content="sys"),
            ChatMessage(role="user", content="look", image="data:image/png;base64,AAAA"),
        ],
        max_tokens=1024,
        temperature=0.2,
    )
    deltas = list(runtime.stream_chat(req))
    assert deltas == ["Hi", " there"]
    assert captured["method"] == "POST"
    assert captured["url"] == "http://127.0.0.1:8000/v1/chat/completions"
    body = captured["json"]
    assert body["model"] == "mid-model"
    assert body["stream"] is True
    assert body["max_tokens"] == 1024
    assert body["messages"][0] == {"role": "system", "content": "sys"}
    parts = body["messages"][1]["content"]
    assert parts[0] == {"type": "text", "text": "look"}
    assert parts[1]["image_url"]["url"].startswith("data:image/png")
    assert "Authorization" not in captured["headers"]


def test_stream_chat_rate_limited(monkeypatch):
    monkeypatch.setattr("httpx.Client", _client_class({}, FakeResponse(status_code=429)))
    runtime = LocalServerRuntime(SettingsStub())
    req = ChatRequest(model="m", messages=[ChatMessage(role="user", content="hi")])
    with pytest.raises(RateLimitError):
        list(runtime.stream_chat(req))


def test_stream_chat_network_error(monkeypatch):
    import httpx

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, *a, **kw):
            raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("httpx.Client", Client)
    runtime = LocalServerRuntime(SettingsStub())
    req = ChatRequest(model="m", messages=[ChatMessage(role="user", content="hi")])
    with pytest.raises(NetworkError):
        list(runtime.stream_chat(req))


def test_load_reports_progress_and_checks_model(monkeypatch):
    captured = {}
    payload = {"data": [{"id": "mid-model"}, {"id": "other"}]}
    monkeypatch.setattr("httpx.Client", _client_class(captured, FakeResponse(payload=payload)))
    runtime = LocalServerRuntime(SettingsStub())
    progress = []
    runtime.load("mid-model", progress.append)
    assert captured["get_url"] == "http://127.0.0.1:8000/v1/models"
    assert len(progress) == 3
    assert progress[-1] == "Model mid-model ready"


def test_load_rejects_unserved_model(monkeypatch):
    payload = {"data": [{"id": "other"}]}
    monkeypatch.setattr("httpx.Client", _client_class({}, FakeResponse(payload=payload)))
    runtime = LocalServerRuntime(SettingsStub())
    with pytest.raises(ValidationError):
        runtime.load("mid-model", lambda text: None)
