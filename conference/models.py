from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .states import CharacterStatus, MessageType


def new_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


class ProviderKind(str, Enum):
    SILICONFLOW = "siliconflow"
    OPENROUTER = "openrouter"
    DEEPSEEK = "deepseek"
    CUSTOM = "custom"


class ProviderBinding(BaseModel):
    provider: ProviderKind
    model: str = ""
    api_key: str = ""
    # Only meaningful (and required) for ProviderKind.CUSTOM
    base_url: Optional[str] = None


class Character(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    avatar: str = ""
    color: str = "#ffffff"
    personality: str = ""
    system_prompt: str = ""
    status: CharacterStatus = CharacterStatus.IDLE
    binding: ProviderBinding


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    character_id: str
    content: str = ""
    timestamp: int = Field(default_factory=now_ms)
    type: MessageType = MessageType.AI


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    topic: str
    messages: List[Message] = []
    characters: List[Character] = []
    is_active: bool = False
    current_speaker_index: int = 0
    round: int = 0
    created_at: int = Field(default_factory=now_ms)
    # Staging area for the turn being streamed; never persisted.
    current_speaking_message: Optional[Message] = Field(default=None, exclude=True)

    def character(self, character_id: str) -> Optional[Character]:
        for c in self.characters:
            if c.id == character_id:
                return c
        return None


class ModelCacheEntry(BaseModel):
    provider: ProviderKind
    models: List[str] = []
    last_fetched_at: float


DEFAULT_API_KEYS: Dict[str, str] = {kind.value: "" for kind in ProviderKind}


class UserConfig(BaseModel):
    api_keys: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_API_KEYS))
    selected_characters: List[Character] = []
    theme: str = "arcade"
