import asyncio

import pytest

from chat_core.domain.exceptions import ApiError, RateLimitError, ValidationError
from chat_core.domain.models import ChatMessage, ChatRequest, ImagePart
from chat_core.providers import create_provider
from chat_core.providers.glm_client import GlmClient
from chat_core.providers.openai_client import OpenAIClient


class SettingsStub:
    default_provider = "glm"
    glm_api_key = "glm-test-key"
    glm_base_url = "https://open.bigmodel.cn/api/paas/v4/"
    openai_api_key = "sk-test-key-123"
    openai_base_url = "https://api.openai.com/v1"
    embedding_model = "embedding"
    http_timeout = 1.0


class FakeResponse:
    def __init__(self, status_code=200, payload=None, lines=(), text=""):
        self.status_code = status_code
        self._payload = payload or {}
        self._lines = list(lines)
        self.text = text

    def json(self):
        return self._payload

    async def aread(self):
        return self.text.encode("utf-8")

    async def aiter_lines(self):
        for line in self._lines:
            yield line


class FakeStreamContext:
    def __init__(self, response):
        self._response = response

    async def __aenter__(self):
        return self._response

    async def __aexit__(self, *args):
        return False


def install_client(monkeypatch, response, calls):
    class Client:
        def __init__(self, *a, **kw):
            calls.append(("init", kw))

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, headers=None):
            calls.append(("post", url, json, headers))
            return response

        def stream(self, method, url, json=None, headers=None):
            calls.append(("stream", url, json, headers))
            return FakeStreamContext(response)

    monkeypatch.setattr("httpx.AsyncClient", Client)


def _request(model="chat", **kwargs):
    return ChatRequest(provider="glm", model=model, messages=[ChatMessage(role="user", content="hi")], **kwargs)


def test_chat_resolves_logical_model(monkeypatch):
    calls = []
    install_client(monkeypatch, FakeResponse(payload={
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
    }), calls)

    result = asyncio.run(GlmClient(SettingsStub()).chat(_request()))

    assert result.content == "ok"
    assert result.usage.total_tokens == 2
    _, url, payload, headers = calls[1]
    assert url == "https://open.bigmodel.cn/api/paas/v4/chat/completions"
    assert payload["model"] == "glm-4.6"
    assert payload["temperature"] == 0.7
    assert payload["max_tokens"] == 8192
    assert payload["stream"] is False
    assert headers["Authorization"] == "Bearer glm-test-key"
    assert calls[0][1]["trust_env"] is False


def test_unknown_model_names_pass_through(monkeypatch):
    calls = []
    install_client(monkeypatch, FakeResponse(payload={"choices": []}), calls)
    asyncio.run(OpenAIClient(SettingsStub()).chat(_request(model="gpt-4.1-mini", max_tokens=100)))
    payload = calls[1][2]
    assert payload["model"] == "gpt-4.1-mini"
    assert payload["max_tokens"] == 100
    assert "temperature" not in payload


def test_images_are_sent_as_data_uris(monkeypatch):
    calls = []
    install_client(monkeypatch, FakeResponse(payload={"choices": []}), calls)
    message = ChatMessage(role="user", content="what is this?", images=[ImagePart(data=b"abc", media_type="image/png")])
    req = ChatRequest(provider="openai", model="vision", messages=[message])
    asyncio.run(OpenAIClient(SettingsStub()).chat(req))

    content = calls[1][2]["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "what is this?"}
    assert content[1]["image_url"]["url"] == "data:image/png;base64,YWJj"


def test_stream_yields_deltas(monkeypatch):
    calls = []
    install_client(monkeypatch, FakeResponse(lines=[
        'data: {"choices": [{"index": 0, "delta": {"content": "a"}}]}',
        "",
        "data: not-json",
        'data: {"choices": [{"index": 0, "delta": {"content": "b"}, "finish_reason": "stop"}], '
        '"usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}}',
        "data: [DONE]",
    ]), calls)

    async def collect():
        return [chunk async for chunk in GlmClient(SettingsStub()).chat_stream(_request())]

    chunks = asyncio.run(collect())
    assert [c.choices[0].delta.content for c in chunks] == ["a", "b"]
    assert chunks[1].usage.total_tokens == 3
    assert calls[1][2]["stream"] is True


def test_stream_rate_limit_raises(monkeypatch):
    install_client(monkeypatch, FakeResponse(status_code=429, text="slow down"), [])

    async def collect():
        return [chunk async for chunk in OpenAIClient(SettingsStub()).chat_stream(_request())]

    with pytest.raises(RateLimitError):
        asyncio.run(collect())


def test_chat_error_status_raises_api_error(monkeypatch):
    install_client(monkeypatch, FakeResponse(status_code=500, text="boom"), [])
    with pytest.raises(ApiError) as excinfo:
        asyncio.run(OpenAIClient(SettingsStub()).chat(_request()))
    assert excinfo.value.http_status == 500


def test_embed_orders_by_index(monkeypatch):
    calls = []
    install_client(monkeypatch, FakeResponse(payload={"data": [
        {"index": 1, "embedding": [0, 1]},
        {"index": 0, "embedding": [1, 0]},
    ]}), calls)

    vectors = asyncio.run(OpenAIClient(SettingsStub()).embed(["first", "second"]))

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    assert calls[1][1] == "https://api.openai.com/v1/embeddings"
    assert calls[1][2]["model"] == "text-embedding-3-small"


def test_embed_count_mismatch_raises(monkeypatch):
    install_client(monkeypatch, FakeResponse(payload={"data": [{"index": 0, "embedding": [1]}]}), [])
    with pytest.raises(ApiError):
        asyncio.run(OpenAIClient(SettingsStub()).embed(["a", "b"]))


def test_embed_empty_input_skips_request(monkeypatch):
    calls = []
    install_client(monkeypatch, FakeResponse(), calls)
    assert asyncio.run(OpenAIClient(SettingsStub()).embed([])) == []
    assert calls == []


def test_missing_key_raises_validation_error():
    class NoKey(SettingsStub):
        openai_api_key = None

    with pytest.raises(ValidationError):
        asyncio.run(OpenAIClient(NoKey()).chat(_request()))


def test_create_provider_default(monkeypatch):
    monkeypatch.setattr("chat_core.providers.settings", SettingsStub())
    assert isinstance(create_provider(), GlmClient)


def test_create_provider_explicit():
    assert isinstance(create_provider("OpenAI", SettingsStub()), OpenAIClient)
    with pytest.raises(KeyError):
        create_provider("kimi", SettingsStub())
