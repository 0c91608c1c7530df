import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from conference import providers
from conference.errors import ProviderConfigError, ProviderError
from conference.llm import PROVIDERS
from conference.models import ProviderBinding, ProviderKind
from conference.providers import HttpProviderAdapter, error_message, iter_deltas, validate_api_key


OPENROUTER_KEY = "sk-or-" + "x" * 30


def frame(content):
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]})


def sse_response(*lines, status=200):
    return httpx.Response(status, text="\n\n".join(lines) + "\n\n", headers={"content-type": "text/event-stream"})


def adapter_with(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpProviderAdapter(client=client, timeout=5)


async def collect(agen):
    return [item async for item in agen]


async def lines_of(*lines):
    for line in lines:
        yield line


# ---- error text and frame parsing --------------------------------------


def test_error_message_prefers_structured_message():
    assert error_message(401, '{"error": {"message": "Invalid API key"}}') == "Invalid API key"


def test_error_message_falls_back_to_body_then_status():
    assert error_message(502, "Bad gateway from upstream") == "Bad gateway from upstream"
    assert error_message(503, "") == "HTTP 503"


@pytest.mark.asyncio
async def test_iter_deltas_skips_noise_and_stops_at_done():
    deltas = await collect(
        iter_deltas(
            lines_of(
                ": keep-alive",
                frame("Hel"),
                "data: {not json",
                'data: {"choices": [{"delta": {}}]}',
                frame("lo"),
                "data: [DONE]",
                frame("ignored"),
            )
        )
    )
    assert deltas == ["Hel", "lo"]


@pytest.mark.asyncio
async def test_iter_deltas_raises_on_error_frame():
    with pytest.raises(ProviderError, match="quota exceeded"):
        await collect(iter_deltas(lines_of(frame("a"), 'data: {"error": {"message": "quota exceeded"}}')))


def test_validate_api_key():
    assert validate_api_key(ProviderKind.OPENROUTER, OPENROUTER_KEY)
    assert not validate_api_key(ProviderKind.OPENROUTER, "sk-" + "x" * 30)
    assert validate_api_key(ProviderKind.SILICONFLOW, "sk-" + "a" * 30)
    assert not validate_api_key(ProviderKind.DEEPSEEK, "sk-short")
    assert validate_api_key(ProviderKind.CUSTOM, "anything")
    assert not validate_api_key(ProviderKind.CUSTOM, "   ")


# ---- streaming over HTTP -----------------------------------------------


@pytest.mark.asyncio
async def test_stream_chat_request_shape_and_fragments():
    seen = []

    def handler(request):
        seen.append(request)
        return sse_response(frame("Hel"), frame("lo"), "data: [DONE]")

    binding = ProviderBinding(provider=ProviderKind.OPENROUTER, model="openai/gpt-4o", api_key=OPENROUTER_KEY)
    chunks = await collect(adapter_with(handler).stream_chat(binding, "Be brief", [HumanMessage(content="hi")]))

    assert chunks == ["Hel", "lo"]
    request = seen[0]
    assert str(request.url) == "https://openrouter.ai/api/v1/chat/completions"
    assert request.headers["Authorization"] == f"Bearer {OPENROUTER_KEY}"
    assert "HTTP-Referer" in request.headers
    assert "X-Title" in request.headers
    body = json.loads(request.content)
    assert body["model"] == "openai/gpt-4o"
    assert body["stream"] is True
    assert body["temperature"] == 0.8
    assert body["max_tokens"] == 1000
    assert body["messages"] == [
        {"role": "system", "content": "Be brief"},
        {"role": "user", "content": "hi"},
    ]


@pytest.mark.asyncio
async def test_stream_chat_custom_provider_uses_given_base_url():
    seen = []

    def handler(request):
        seen.append(request)
        return sse_response(frame("ok"), "data: [DONE]")

    binding = ProviderBinding(
        provider=ProviderKind.CUSTOM, model="local", api_key="k", base_url="http://localhost:8000/v1/"
    )
    assert await collect(adapter_with(handler).stream_chat(binding, "s", [])) == ["ok"]
    assert str(seen[0].url) == "http://localhost:8000/v1/chat/completions"
    assert "HTTP-Referer" not in seen[0].headers


@pytest.mark.asyncio
async def test_stream_chat_http_error_uses_provider_message():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "Invalid API key"}})

    binding = ProviderBinding(provider=ProviderKind.DEEPSEEK, model="deepseek-chat", api_key="sk-bad")
    with pytest.raises(ProviderError, match="Invalid API key") as info:
        await collect(adapter_with(handler).stream_chat(binding, "s", []))
    assert info.value.status_code == 401


@pytest.mark.asyncio
async def test_stream_chat_network_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    binding = ProviderBinding(provider=ProviderKind.DEEPSEEK, model="deepseek-chat", api_key="sk-x")
    with pytest.raises(ProviderError, match="^Network error"):
        await collect(adapter_with(handler).stream_chat(binding, "s", []))


@pytest.mark.asyncio
async def test_stream_chat_rejects_incomplete_bindings():
    adapter = adapter_with(lambda request: sse_response("data: [DONE]"))
    with pytest.raises(ProviderConfigError):
        await collect(adapter.stream_chat(ProviderBinding(provider=ProviderKind.CUSTOM, model="m", api_key="k"), "s", []))
    with pytest.raises(ProviderConfigError):
        await collect(adapter.stream_chat(ProviderBinding(provider=ProviderKind.DEEPSEEK, model="m"), "s", []))


# ---- non-streaming send and connectivity -------------------------------


@pytest.fixture
def fake_llm(monkeypatch):
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=AIMessage(content="pong"))
    monkeypatch.setattr(providers, "chat_client_for", lambda binding, max_tokens=1000: llm)
    return llm


@pytest.mark.asyncio
async def test_send_prepends_system_prompt(fake_llm, binding):
    reply = await HttpProviderAdapter(timeout=5).send(binding, "Be brief", [HumanMessage(content="ping")])
    assert reply == "pong"
    sent = fake_llm.ainvoke.call_args.args[0]
    assert isinstance(sent[0], SystemMessage)
    assert sent[0].content == "Be brief"
    assert sent[1].content == "ping"


@pytest.mark.asyncio
async def test_send_maps_status_errors(fake_llm, binding):
    response = httpx.Response(
        429,
        text='{"error": {"message": "Rate limited"}}',
        request=httpx.Request("POST", "https://api.deepseek.com/v1/chat/completions"),
    )
    fake_llm.ainvoke.side_effect = openai.APIStatusError("rate limited", response=response, body=None)
    with pytest.raises(ProviderError, match="Rate limited") as info:
        await HttpProviderAdapter(timeout=5).send(binding, "s", [])
    assert info.value.status_code == 429


@pytest.mark.asyncio
async def test_send_rejects_non_text_content(fake_llm, binding):
    fake_llm.ainvoke.return_value = AIMessage(content=[{"type": "text", "text": "x"}])
    with pytest.raises(ProviderError, match="Malformed"):
        await HttpProviderAdapter(timeout=5).send(binding, "s", [])


@pytest.mark.asyncio
async def test_connection_test_uses_a_one_token_request(binding):
    adapter = HttpProviderAdapter(timeout=5)
    adapter.send = AsyncMock(return_value="hi")
    assert await adapter.test_connection(binding) is True
    assert adapter.send.call_args.kwargs["max_tokens"] == 1

    adapter.send = AsyncMock(return_value="")
    assert await adapter.test_connection(binding) is False

    adapter.send = AsyncMock(side_effect=ProviderError("Invalid API key", 401))
    assert await adapter.test_connection(binding) is False


@pytest.mark.asyncio
async def test_connection_test_for_custom_provider_streams():
    adapter = adapter_with(lambda request: sse_response(frame("h"), frame("i"), "data: [DONE]"))
    good = ProviderBinding(provider=ProviderKind.CUSTOM, model="m", api_key="k", base_url="http://localhost:1234/v1")
    assert await adapter.test_connection(good) is True

    failing = adapter_with(lambda request: httpx.Response(500, text="down"))
    assert await failing.test_connection(good) is False


# ---- model listing -----------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_models_reads_listing():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "m1"}, {"id": "m2"}, {"object": "model"}]})

    models = await adapter_with(handler).fetch_models(ProviderKind.SILICONFLOW, "sk-key")
    assert models == ["m1", "m2"]
    assert str(seen[0].url) == "https://api.siliconflow.cn/v1/models"
    assert seen[0].headers["Authorization"] == "Bearer sk-key"


@pytest.mark.asyncio
async def test_fetch_models_falls_back_to_static_list():
    static = list(PROVIDERS[ProviderKind.OPENROUTER].static_models)
    failing = adapter_with(lambda request: httpx.Response(500, text="oops"))
    assert await failing.fetch_models(ProviderKind.OPENROUTER, "sk-or-key") == static
    assert await failing.fetch_models(ProviderKind.OPENROUTER, "") == static

    def unexpected(request):
        raise AssertionError("DeepSeek models are not listed over HTTP")

    deepseek = list(PROVIDERS[ProviderKind.DEEPSEEK].static_models)
    assert await adapter_with(unexpected).fetch_models(ProviderKind.DEEPSEEK, "sk-key") == deepseek
    assert await adapter_with(unexpected).fetch_models(ProviderKind.CUSTOM, "key") == []
