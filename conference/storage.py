"""Durable storage for conversations, user configuration and model lists.

Everything is kept as JSON text in a flat key-value namespace. The substrate
is either a directory with one file per key or an in-memory dict.
"""

from __future__ import annotations

import json
import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from loguru import logger
from pydantic import ValidationError

from .config import MODEL_CACHE_TTL_SECONDS, get_settings
from .errors import StorageError
from .models import Conversation, ModelCacheEntry, ProviderKind, UserConfig


CONFIG_KEY = "ai-conference-config"
CONVERSATIONS_KEY = "ai-conference-conversations"
ACTIVE_KEY = "ai-conference-active"
MODELS_KEY_PREFIX = "ai-conference-models-"
DEFAULT_MODEL_KEY_PREFIX = "ai-conference-default-model-"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class JsonDirectoryStore:
    """One ``<key>.json`` file per key inside ``directory``."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_SAFE_KEY.sub('_', key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            logger.error(f"storage_read_failed | key={key} | {e}")
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(value, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e


def merge_defaults(defaults: Dict[str, Any], stored: Dict[str, Any]) -> Dict[str, Any]:
    """Backfill keys missing from ``stored`` with ``defaults``, recursively for dicts."""
    merged = dict(stored)
    for key, default in defaults.items():
        if key not in stored:
            merged[key] = default
        elif isinstance(default, dict) and isinstance(stored[key], dict):
            merged[key] = merge_defaults(default, stored[key])
    return merged


class ModelCache:
    def __init__(
        self,
        kv: KeyValueStore,
        ttl: float = MODEL_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.ttl = ttl
        self.clock = clock

    @staticmethod
    def _key(provider: ProviderKind | str) -> str:
        return f"{MODELS_KEY_PREFIX}{ProviderKind(provider).value}"

    def get_cached(self, provider: ProviderKind | str) -> Optional[List[str]]:
        raw = self.kv.get(self._key(provider))
        if raw is None:
            return None
        try:
            entry = ModelCacheEntry.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"model_cache_corrupt | provider={provider} | {e}")
            return None
        if self.clock() - entry.last_fetched_at > self.ttl:
            logger.debug(f"model_cache_expired | provider={entry.provider.value}")
            return None
        return list(entry.models)

    def store(self, provider: ProviderKind | str, models: List[str]) -> None:
        entry = ModelCacheEntry(provider=ProviderKind(provider), models=list(models), last_fetched_at=self.clock())
        self.kv.set(self._key(provider), entry.model_dump_json())


class PersistenceStore:
    def __init__(self, kv: KeyValueStore, clock: Callable[[], float] = time.time) -> None:
        self.kv = kv
        self.models = ModelCache(kv, clock=clock)

    @classmethod
    def from_settings(cls) -> "PersistenceStore":
        return cls(JsonDirectoryStore(get_settings().data_dir))

    # ---- conversations -------------------------------------------------

    def _read_conversation_dicts(self) -> List[Dict[str, Any]]:
        raw = self.kv.get(CONVERSATIONS_KEY)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.error(f"conversations_corrupt | {e}")
            return []
        if not isinstance(data, list):
            logger.error("conversations_corrupt | expected a list")
            return []
        return [item for item in data if isinstance(item, dict)]

    def _write_conversation_dicts(self, items: List[Dict[str, Any]]) -> None:
        self.kv.set(CONVERSATIONS_KEY, json.dumps(items, ensure_ascii=False))

    def list_conversations(self) -> List[Conversation]:
        conversations = []
        for item in self._read_conversation_dicts():
            try:
                conversations.append(Conversation.model_validate(item))
            except ValidationError as e:
                logger.warning(f"conversation_skipped | id={item.get('id')} | {e}")
        return conversations

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self.list_conversations():
            if conversation.id == conversation_id:
                return conversation
        return None

    def save_conversation(self, conversation: Conversation) -> None:
        items = self._read_conversation_dicts()
        record = conversation.model_dump(mode="json")
        for i, item in enumerate(items):
            if item.get("id") == conversation.id:
                items[i] = record
                break
        else:
            items.append(record)
        self._write_conversation_dicts(items)
        logger.debug(f"conversation_saved | id={conversation.id} messages={len(conversation.messages)}")

    def delete_conversation(self, conversation_id: str) -> None:
        items = self._read_conversation_dicts()
        remaining = [item for item in items if item.get("id") != conversation_id]
        if len(remaining) != len(items):
            self._write_conversation_dicts(remaining)
            logger.info(f"conversation_deleted | id={conversation_id}")
        if self.get_active_conversation_id() == conversation_id:
            self.set_active_conversation_id(None)

    def set_active_conversation_id(self, conversation_id: Optional[str]) -> None:
        if conversation_id:
            self.kv.set(ACTIVE_KEY, conversation_id)
        else:
            self.kv.delete(ACTIVE_KEY)

    def get_active_conversation_id(self) -> Optional[str]:
        return self.kv.get(ACTIVE_KEY) or None

    # ---- user config ---------------------------------------------------

    def save_user_config(self, config: UserConfig) -> None:
        self.kv.set(CONFIG_KEY, config.model_dump_json())

    def load_user_config(self) -> UserConfig:
        raw = self.kv.get(CONFIG_KEY)
        if raw is None:
            return UserConfig()
        try:
            stored = json.loads(raw)
            if not isinstance(stored, dict):
                raise ValueError("expected an object")
            merged = merge_defaults(UserConfig().model_dump(mode="json"), stored)
            return UserConfig.model_validate(merged)
        except ValueError as e:
            logger.error(f"config_corrupt | falling back to defaults | {e}")
            return UserConfig()

    def save_default_model(self, provider: ProviderKind | str, model: str) -> None:
        self.kv.set(f"{DEFAULT_MODEL_KEY_PREFIX}{ProviderKind(provider).value}", model)

    def load_default_model(self, provider: ProviderKind | str) -> str:
        return self.kv.get(f"{DEFAULT_MODEL_KEY_PREFIX}{ProviderKind(provider).value}") or ""

    # ---- bulk ----------------------------------------------------------

    def export_data(self) -> str:
        data = {
            "config": self.load_user_config().model_dump(mode="json"),
            "conversations": self._read_conversation_dicts(),
            "exportTime": datetime.now(timezone.utc).isoformat(),
        }
        return json.dumps(data, ensure_ascii=False, indent=2)

    def import_data(self, payload: str) -> bool:
        try:
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise ValueError("expected an object")
            if isinstance(data.get("config"), dict):
                merged = merge_defaults(UserConfig().model_dump(mode="json"), data["config"])
                self.save_user_config(UserConfig.model_validate(merged))
            if isinstance(data.get("conversations"), list):
                conversations = [Conversation.model_validate(c) for c in data["conversations"]]
                self._write_conversation_dicts([c.model_dump(mode="json") for c in conversations])
        except ValueError as e:
            logger.error(f"import_failed | {e}")
            return False
        logger.info("import_complete")
        return True

    def clear_all(self) -> None:
        for key in (CONFIG_KEY, CONVERSATIONS_KEY, ACTIVE_KEY):
            self.kv.delete(key)
