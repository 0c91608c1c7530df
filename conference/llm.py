from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional, Tuple

from loguru import logger
from langchain_openai import ChatOpenAI

from .config import get_settings
from .errors import ProviderConfigError
from .models import ProviderBinding, ProviderKind


TEMPERATURE = 0.8
MAX_TOKENS = 1000


@dataclass(frozen=True)
class ProviderSpec:
    name: str
    base_url: Optional[str]
    static_models: Tuple[str, ...] = ()
    lists_models: bool = False
    key_prefix: Optional[str] = None
    # Header name -> settings attribute holding its value
    extra_headers: Dict[str, str] = field(default_factory=dict)


PROVIDERS: Dict[ProviderKind, ProviderSpec] = {
    ProviderKind.SILICONFLOW: ProviderSpec(
        name="SiliconFlow",
        base_url="https://api.siliconflow.cn/v1",
        static_models=(
            "deepseek-ai/DeepSeek-V3",
            "Qwen/Qwen2.5-72B-Instruct",
            "Qwen/Qwen2.5-32B-Instruct",
            "Qwen/Qwen2.5-7B-Instruct",
            "meta-llama/Meta-Llama-3.1-70B-Instruct",
        ),
        lists_models=True,
        key_prefix="sk-",
    ),
    ProviderKind.OPENROUTER: ProviderSpec(
        name="OpenRouter",
        base_url="https://openrouter.ai/api/v1",
        static_models=(
            "openai/gpt-4o",
            "openai/gpt-4o-mini",
            "anthropic/claude-3.5-sonnet",
            "meta-llama/llama-3.1-70b-instruct",
            "qwen/qwen-2.5-72b-instruct",
        ),
        lists_models=True,
        key_prefix="sk-or-",
        extra_headers={"HTTP-Referer": "app_url", "X-Title": "app_title"},
    ),
    ProviderKind.DEEPSEEK: ProviderSpec(
        name="DeepSeek",
        base_url="https://api.deepseek.com/v1",
        static_models=("deepseek-chat", "deepseek-coder", "deepseek-reasoner"),
        key_prefix="sk-",
    ),
    ProviderKind.CUSTOM: ProviderSpec(name="Custom", base_url=None),
}


def provider_spec(provider: ProviderKind | str) -> ProviderSpec:
    try:
        return PROVIDERS[ProviderKind(provider)]
    except ValueError as e:
        raise ProviderConfigError(f"Unknown API provider: {provider}") from e


def resolve_base_url(binding: ProviderBinding) -> str:
    spec = provider_spec(binding.provider)
    if binding.provider is ProviderKind.CUSTOM:
        url = (binding.base_url or "").strip()
        if not url:
            raise ProviderConfigError("Custom provider requires a base URL")
    else:
        url = spec.base_url or ""
    return url.rstrip("/")


def extra_headers(provider: ProviderKind) -> Dict[str, str]:
    settings = get_settings()
    return {header: getattr(settings, attr) for header, attr in provider_spec(provider).extra_headers.items()}


def request_headers(binding: ProviderBinding) -> Dict[str, str]:
    if not binding.api_key:
        raise ProviderConfigError("API key must not be empty")
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {binding.api_key}",
    }
    headers.update(extra_headers(binding.provider))
    return headers


@lru_cache(maxsize=16)
def get_chat_client(
    provider: ProviderKind,
    model: str,
    api_key: str,
    base_url: str,
    max_tokens: int = MAX_TOKENS,
) -> ChatOpenAI:
    """Return a cached LangChain ChatOpenAI client for one provider binding.

    Retries are disabled; a failing provider should surface immediately.
    """
    logger.debug(f"Initializing chat client provider={provider.value} model={model} base_url={base_url}")
    return ChatOpenAI(
        model=model,
        api_key=api_key,
        base_url=base_url,
        temperature=TEMPERATURE,
        max_tokens=max_tokens,
        default_headers=extra_headers(provider) or None,
        max_retries=0,
        timeout=get_settings().http_timeout,
    )


def chat_client_for(binding: ProviderBinding, max_tokens: int = MAX_TOKENS) -> ChatOpenAI:
    if not binding.api_key:
        raise ProviderConfigError("API key must not be empty")
    return get_chat_client(binding.provider, binding.model, binding.api_key, resolve_base_url(binding), max_tokens)
