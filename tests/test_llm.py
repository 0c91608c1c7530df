import pytest

from conference.errors import ProviderConfigError
from conference.llm import (
    PROVIDERS,
    TEMPERATURE,
    chat_client_for,
    extra_headers,
    provider_spec,
    request_headers,
    resolve_base_url,
)
from conference.models import ProviderBinding, ProviderKind


def test_every_provider_has_an_entry():
    assert set(PROVIDERS) == set(ProviderKind)


def test_unknown_provider():
    with pytest.raises(ProviderConfigError):
        provider_spec("nope")


def test_base_urls():
    assert resolve_base_url(ProviderBinding(provider=ProviderKind.DEEPSEEK)) == "https://api.deepseek.com/v1"
    custom = ProviderBinding(provider=ProviderKind.CUSTOM, base_url="http://host:8080/v1//")
    assert resolve_base_url(custom) == "http://host:8080/v1"
    with pytest.raises(ProviderConfigError):
        resolve_base_url(ProviderBinding(provider=ProviderKind.CUSTOM, base_url="  "))


def test_only_openrouter_sends_attribution_headers():
    assert set(extra_headers(ProviderKind.OPENROUTER)) == {"HTTP-Referer", "X-Title"}
    assert extra_headers(ProviderKind.SILICONFLOW) == {}


def test_request_headers_require_a_key():
    with pytest.raises(ProviderConfigError):
        request_headers(ProviderBinding(provider=ProviderKind.DEEPSEEK))
    headers = request_headers(ProviderBinding(provider=ProviderKind.DEEPSEEK, api_key="sk-1"))
    assert headers["Authorization"] == "Bearer sk-1"
    assert headers["Content-Type"] == "application/json"


def test_chat_client_is_cached_per_binding():
    binding = ProviderBinding(provider=ProviderKind.DEEPSEEK, model="deepseek-chat", api_key="sk-cache")
    client = chat_client_for(binding, max_tokens=1)
    assert chat_client_for(binding, max_tokens=1) is client
    assert chat_client_for(binding) is not client
    assert client.model_name == "deepseek-chat"
    assert client.temperature == TEMPERATURE
    assert client.max_retries == 0
