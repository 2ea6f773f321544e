import httpx
import pytest

from ai_gateway.domain.exceptions import (
    ApiError,
    AuthError,
    MalformedResponseError,
    ProviderTimeout,
    RateLimitError,
    ServerError,
    StreamTruncatedError,
)
from ai_gateway.domain.models import ChatMessage, ChatParameters, ChatRole, FinishReason
from ai_gateway.providers.base import ProviderCall
from ai_gateway.providers.kimi_client import KimiClient
from ai_gateway.providers.registry import DEFAULT_REGISTRY


class SettingsStub:
    kimi_api_key = "k"
    http_timeout = 1.0
    kimi_base_url = "https://api.moonshot.cn/v1"


def _call(**params):
    return ProviderCall(
        request_id="req-1",
        model=DEFAULT_REGISTRY.get_model("kimi-k2-turbo-preview"),
        messages=[
            ChatMessage(role=ChatRole.SYSTEM, content="be brief"),
            ChatMessage(role=ChatRole.USER, content="hi"),
        ],
        parameters=ChatParameters(**params),
    )


class Resp:
    def __init__(self, status_code=200, body=None, text="", headers=None):
        self.status_code = status_code
        self._body = body
        self.text = text
        self.headers = headers or {}

    def json(self):
        return self._body


def _client_returning(resp, captured=None):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            if captured is not None:
                captured["url"] = url
                captured["payload"] = json
                captured["headers"] = headers
            return resp

    return Client


def test_kimi_client_parse_basic(monkeypatch):
    kc = KimiClient(SettingsStub())
    body = {
        "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
    }
    monkeypatch.setattr("httpx.Client", _client_returning(Resp(body=body)))
    res = kc.complete(_call())
    assert res.message.content == "ok"
    assert res.message.role == ChatRole.ASSISTANT
    assert res.finish_reason == FinishReason.STOP
    assert res.usage.total_tokens == 2
    assert res.request_id == "req-1"


def test_kimi_client_payload(monkeypatch):
    kc = KimiClient(SettingsStub())
    captured = {}
    body = {"choices": [{"message": {"content": ""}, "finish_reason": "length"}], "usage": {}}
    monkeypatch.setattr("httpx.Client", _client_returning(Resp(body=body), captured))
    res = kc.complete(_call(temperature=0.0, max_tokens=100000, stop=["END"]))
    payload = captured["payload"]
    assert captured["url"] == "https://api.moonshot.cn/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer k"
    assert payload["model"] == "kimi-k2-turbo-preview"
    assert payload["messages"][0] == {"role": "system", "content": "be brief"}
    # 0.0 是合法温度，不能被默认值覆盖
    assert payload["temperature"] == 0.0
    assert payload["max_tokens"] == 8192
    assert payload["stop"] == ["END"]
    assert payload["stream"] is False
    assert res.finish_reason == FinishReason.LENGTH


@pytest.mark.parametrize(
    "status, exc",
    [(429, RateLimitError), (401, AuthError), (400, ApiError), (503, ServerError)],
)
def test_kimi_client_status_mapping(monkeypatch, status, exc):
    kc = KimiClient(SettingsStub())
    monkeypatch.setattr(
        "httpx.Client",
        _client_returning(Resp(status_code=status, text="boom", headers={"retry-after": "3"})),
    )
    with pytest.raises(exc) as info:
        kc.complete(_call())
    assert info.value.provider == "kimi"
    if exc is RateLimitError:
        assert info.value.retry_after == 3.0


def test_kimi_client_timeout_is_transient(monkeypatch):
    kc = KimiClient(SettingsStub())

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, *a, **kw):
            raise httpx.ReadTimeout("timed out")

    monkeypatch.setattr("httpx.Client", Client)
    with pytest.raises(ProviderTimeout) as info:
        kc.complete(_call())
    assert info.value.transient


def test_kimi_client_missing_key_makes_no_request(monkeypatch):
    class NoKey(SettingsStub):
        kimi_api_key = None

    def _fail(*a, **kw):
        raise AssertionError("no HTTP client should be created")

    monkeypatch.setattr("httpx.Client", _fail)
    with pytest.raises(AuthError) as info:
        KimiClient(NoKey()).complete(_call())
    assert info.value.code == "MISSING_API_KEY"


def test_kimi_client_rejects_empty_choices(monkeypatch):
    monkeypatch.setattr("httpx.Client", _client_returning(Resp(body={"choices": []})))
    with pytest.raises(MalformedResponseError):
        KimiClient(SettingsStub()).complete(_call())


class FakeStreamResponse:
    def __init__(self, lines, status_code=200):
        self._lines = list(lines)
        self.status_code = status_code
        self.text = "upstream error"
        self.headers = {}

    def read(self):
        return self.text.encode()

    def iter_lines(self):
        for line in self._lines:
            yield line


def _stream_client(response, captured=None):
    class StreamContext:
        def __enter__(self):
            return response

        def __exit__(self, *args):
            return False

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, *a, **kw):
            raise AssertionError("post should not be called in stream test")

        def stream(self, method, url, json=None, **kw):
            if captured is not None:
                captured["payload"] = json
            return StreamContext()

    return Client


def test_kimi_client_stream(monkeypatch):
    kc = KimiClient(SettingsStub())
    stream_lines = [
        'data: {"choices": [{"index": 0, "delta": {"role": "assistant", "content": ""}}]}',
        'data: {"choices": [{"index": 0, "delta": {"content": "hel"}}]}',
        'data: {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}], "usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}}',
        "data: [DONE]",
    ]
    captured = {}
    monkeypatch.setattr("httpx.Client", _stream_client(FakeStreamResponse(stream_lines), captured))
    chunks = list(kc.stream(_call()))
    assert [c.delta for c in chunks] == ["hel", "lo", ""]
    assert [c.index for c in chunks] == [0, 1, 2]
    assert [c.done for c in chunks] == [False, False, True]
    assert chunks[-1].usage.total_tokens == 3
    assert chunks[-1].finish_reason == FinishReason.STOP
    assert captured["payload"]["stream"] is True


def test_kimi_client_stream_truncated(monkeypatch):
    kc = KimiClient(SettingsStub())
    stream_lines = ['data: {"choices": [{"index": 0, "delta": {"content": "hel"}}]}']
    monkeypatch.setattr("httpx.Client", _stream_client(FakeStreamResponse(stream_lines)))
    gen = kc.stream(_call())
    assert next(gen).delta == "hel"
    with pytest.raises(StreamTruncatedError):
        next(gen)


def test_kimi_client_stream_http_error(monkeypatch):
    kc = KimiClient(SettingsStub())
    monkeypatch.setattr("httpx.Client", _stream_client(FakeStreamResponse([], status_code=502)))
    with pytest.raises(ServerError):
        list(kc.stream(_call()))
