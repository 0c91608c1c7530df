from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable

from loguru import logger

from .errors import InvalidTransition


class CharacterStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    SPEAKING = "speaking"
    ERROR = "error"


class MessageType(str, Enum):
    USER = "user"
    AI = "ai"


class ConversationPhase(Enum):
    SETUP = "setup"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


_ALLOWED = {
    CharacterStatus.IDLE: {CharacterStatus.THINKING},
    CharacterStatus.THINKING: {CharacterStatus.SPEAKING, CharacterStatus.ERROR},
    CharacterStatus.SPEAKING: {CharacterStatus.IDLE, CharacterStatus.ERROR},
    CharacterStatus.ERROR: {CharacterStatus.IDLE},
}


class CharacterStatusTracker:
    """Per-character status machine: idle -> thinking -> speaking -> idle.

    A failed attempt leaves the character in ``error`` until the next attempt
    for it begins (or everything is reset). The tracker only records state;
    the scheduler decides when to move it.
    """

    def __init__(self, character_ids: Iterable[str] = ()) -> None:
        self._statuses: Dict[str, CharacterStatus] = {cid: CharacterStatus.IDLE for cid in character_ids}

    def get(self, character_id: str) -> CharacterStatus:
        return self._statuses.get(character_id, CharacterStatus.IDLE)

    def track(self, character_id: str) -> None:
        self._statuses.setdefault(character_id, CharacterStatus.IDLE)

    def forget(self, character_id: str) -> None:
        self._statuses.pop(character_id, None)

    def _move(self, character_id: str, target: CharacterStatus) -> None:
        current = self.get(character_id)
        if target not in _ALLOWED[current]:
            raise InvalidTransition(f"{character_id}: {current.value} -> {target.value}")
        self._statuses[character_id] = target
        logger.debug(f"character_status | id={character_id} {current.value}->{target.value}")

    def begin_attempt(self, character_id: str) -> None:
        if self.get(character_id) is CharacterStatus.ERROR:
            self._move(character_id, CharacterStatus.IDLE)
        self._move(character_id, CharacterStatus.THINKING)

    def start_speaking(self, character_id: str) -> None:
        self._move(character_id, CharacterStatus.SPEAKING)

    def finish(self, character_id: str) -> None:
        self._move(character_id, CharacterStatus.IDLE)

    def fail(self, character_id: str) -> None:
        self._move(character_id, CharacterStatus.ERROR)

    def reset(self) -> None:
        for cid in self._statuses:
            self._statuses[cid] = CharacterStatus.IDLE
