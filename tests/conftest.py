"""Shared fixtures: an in-memory store, a scripted provider adapter and a
manager wired to both with every pacing delay set to zero.
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from conference.config import EngineSettings
from conference.errors import ProviderError
from conference.manager import ConversationManager
from conference.models import ProviderBinding, ProviderKind
from conference.storage import MemoryStore, PersistenceStore


class ScriptedAdapter:
    """Stands in for a provider: replies are derived from the system prompt.

    ``failures`` maps a system prompt to an error message raised before the
    first fragment, ``interruptions`` to one raised after it. When ``gate``
    is set the stream stops after its first fragment until the gate opens;
    ``streaming`` is set at that point.
    """

    def __init__(self) -> None:
        self.connected = True
        self.failures: Dict[str, str] = {}
        self.interruptions: Dict[str, str] = {}
        self.calls: List[dict] = []
        self.connection_tests: List[ProviderBinding] = []
        self.models: List[str] = ["model-a", "model-b"]
        self.model_requests: List[ProviderKind] = []
        self.gate: Optional[asyncio.Event] = None
        self.streaming = asyncio.Event()

    async def stream_chat(self, binding, system_prompt, turns, max_tokens=1000):
        self.calls.append({"binding": binding, "system_prompt": system_prompt, "turns": list(turns)})
        if system_prompt in self.failures:
            raise ProviderError(self.failures[system_prompt], 500)
        yield f"[{system_prompt}]"
        self.streaming.set()
        if self.gate is not None:
            await self.gate.wait()
        if system_prompt in self.interruptions:
            raise ProviderError(self.interruptions[system_prompt])
        yield " agrees"

    async def send(self, binding, system_prompt, turns, max_tokens=1000):
        return "ok"

    async def test_connection(self, binding):
        self.connection_tests.append(binding)
        return self.connected

    async def fetch_models(self, provider, api_key):
        self.model_requests.append(provider)
        return list(self.models)


@pytest.fixture
def binding():
    return ProviderBinding(provider=ProviderKind.DEEPSEEK, model="deepseek-chat", api_key="sk-" + "a" * 30)


@pytest.fixture
def kv():
    return MemoryStore()


@pytest.fixture
def store(kv):
    return PersistenceStore(kv)


@pytest.fixture
def adapter():
    return ScriptedAdapter()


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(data_dir=tmp_path, start_delay=0, turn_delay=0, resume_delay=0)


@pytest.fixture
def manager(adapter, store, settings):
    return ConversationManager(adapter, store, settings)


@pytest.fixture
def trio(manager, binding):
    """Roster of three characters named A, B and C."""
    return [manager.add_character(name, binding, system_prompt=f"You are {name}") for name in ("A", "B", "C")]
