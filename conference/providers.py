"""
Provider adapter: one request/response contract over every OpenAI-compatible
backend.

Provider differences (base URL, extra headers, model listing) live in the
``PROVIDERS`` table in :mod:`conference.llm`; nothing here branches on the
provider except through that table.
"""

from __future__ import annotations

import json
import time
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx
import openai
from loguru import logger
from langchain_core.messages import BaseMessage, HumanMessage

from .agents import to_wire, with_system
from .config import get_settings
from .errors import ConferenceError, ProviderError
from .llm import MAX_TOKENS, TEMPERATURE, chat_client_for, provider_spec, request_headers, resolve_base_url
from .models import ProviderBinding, ProviderKind


DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
CONNECTIVITY_MAX_TOKENS = 1
_CONNECTIVITY_PROMPT = "You are a test assistant. Reply briefly to confirm the connection works."


class ProviderAdapter(Protocol):
    def stream_chat(
        self,
        binding: ProviderBinding,
        system_prompt: str,
        turns: List[BaseMessage],
        max_tokens: int = MAX_TOKENS,
    ) -> AsyncIterator[str]: ...

    async def send(
        self,
        binding: ProviderBinding,
        system_prompt: str,
        turns: List[BaseMessage],
        max_tokens: int = MAX_TOKENS,
    ) -> str: ...

    async def test_connection(self, binding: ProviderBinding) -> bool: ...

    async def fetch_models(self, provider: ProviderKind, api_key: str) -> List[str]: ...


def error_message(status_code: int, body: str) -> str:
    """Pick the most useful error text: structured message, raw body, then status."""
    text = (body or "").strip()
    if text:
        try:
            data = json.loads(text)
        except ValueError:
            data = None
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
            if isinstance(err, str) and err:
                return err
        return text
    return f"HTTP {status_code}"


def extract_delta(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    err = payload.get("error")
    if isinstance(err, dict) and err.get("message"):
        raise ProviderError(str(err["message"]))
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


async def iter_deltas(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield content fragments from ``data: <json>`` frames until ``[DONE]``.

    A frame that fails to decode is skipped; partial lines can show up before
    the rest of the payload arrives and must not end the stream.
    """
    async for raw in lines:
        line = raw.strip()
        if not line.startswith(DATA_PREFIX):
            continue
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_SENTINEL:
            return
        try:
            payload = json.loads(data)
        except ValueError:
            logger.debug(f"stream_frame_skipped | {data[:80]!r}")
            continue
        delta = extract_delta(payload)
        if delta:
            yield delta


def validate_api_key(provider: ProviderKind | str, api_key: str) -> bool:
    if not api_key or not api_key.strip():
        return False
    spec = provider_spec(provider)
    if spec.key_prefix is None:
        return True
    return api_key.startswith(spec.key_prefix) and len(api_key) > 20


class HttpProviderAdapter:
    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None) -> None:
        self._client = client
        self._timeout = timeout if timeout is not None else get_settings().http_timeout

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                yield client

    @staticmethod
    def request_body(
        binding: ProviderBinding,
        system_prompt: str,
        turns: List[BaseMessage],
        stream: bool,
        max_tokens: int = MAX_TOKENS,
    ) -> Dict[str, Any]:
        return {
            "model": binding.model,
            "messages": to_wire(with_system(system_prompt, turns)),
            "temperature": TEMPERATURE,
            "max_tokens": max_tokens,
            "stream": stream,
        }

    async def stream_chat(
        self,
        binding: ProviderBinding,
        system_prompt: str,
        turns: List[BaseMessage],
        max_tokens: int = MAX_TOKENS,
    ) -> AsyncIterator[str]:
        url = f"{resolve_base_url(binding)}/chat/completions"
        headers = request_headers(binding)
        body = self.request_body(binding, system_prompt, turns, stream=True, max_tokens=max_tokens)
        t0 = time.perf_counter()
        try:
            async with self._session() as client:
                async with client.stream("POST", url, headers=headers, json=body) as response:
                    if not response.is_success:
                        await response.aread()
                        raise ProviderError(error_message(response.status_code, response.text), response.status_code)
                    async for delta in iter_deltas(response.aiter_lines()):
                        yield delta
        except httpx.HTTPError as e:
            raise ProviderError(f"Network error: {str(e) or type(e).__name__}") from e
        logger.info(f"llm_stream | provider={binding.provider.value} model={binding.model} dt={time.perf_counter() - t0:.2f}s")

    async def send(
        self,
        binding: ProviderBinding,
        system_prompt: str,
        turns: List[BaseMessage],
        max_tokens: int = MAX_TOKENS,
    ) -> str:
        llm = chat_client_for(binding, max_tokens)
        t0 = time.perf_counter()
        try:
            result = await llm.ainvoke(with_system(system_prompt, turns))
        except openai.APIStatusError as e:
            raise ProviderError(error_message(e.status_code, e.response.text), e.status_code) from e
        except openai.APIError as e:
            raise ProviderError(str(e)) from e
        except (TypeError, ValueError, KeyError) as e:
            raise ProviderError(f"Malformed response from provider: {e}") from e
        content = getattr(result, "content", None)
        if not isinstance(content, str):
            raise ProviderError("Malformed response from provider: missing message content")
        logger.info(f"llm_call | provider={binding.provider.value} model={binding.model} dt={time.perf_counter() - t0:.2f}s")
        return content

    async def test_connection(self, binding: ProviderBinding) -> bool:
        turns: List[BaseMessage] = [HumanMessage(content="Hello")]
        try:
            if binding.provider is ProviderKind.CUSTOM:
                async with aclosing(
                    self.stream_chat(binding, _CONNECTIVITY_PROMPT, turns, max_tokens=CONNECTIVITY_MAX_TOKENS)
                ) as fragments:
                    async for fragment in fragments:
                        if fragment:
                            return True
                return False
            reply = await self.send(binding, _CONNECTIVITY_PROMPT, turns, max_tokens=CONNECTIVITY_MAX_TOKENS)
            return len(reply) > 0
        except ConferenceError as e:
            logger.warning(f"connection_test_failed | provider={binding.provider.value} model={binding.model} | {e}")
            return False

    async def fetch_models(self, provider: ProviderKind, api_key: str) -> List[str]:
        spec = provider_spec(provider)
        fallback = list(spec.static_models)
        if not spec.lists_models or not spec.base_url or not api_key:
            return fallback
        try:
            async with self._session() as client:
                response = await client.get(
                    f"{spec.base_url}/models",
                    headers={"Authorization": f"Bearer {api_key}"},
                )
                response.raise_for_status()
                data = response.json().get("data", [])
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"model_list_failed | provider={provider.value} | {e}")
            return fallback
        models = [m["id"] for m in data if isinstance(m, dict) and m.get("id")]
        logger.info(f"model_list | provider={provider.value} count={len(models)}")
        return models or fallback
