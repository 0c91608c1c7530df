from __future__ import annotations

from loguru import logger

from .models import Message, new_id, now_ms
from .states import MessageType


class StreamingAggregator:
    """Collects one turn's streamed fragments into a message.

    ``snapshot`` is the live, uncommitted message. Every ``feed`` returns a new
    ``Message`` object so consumers comparing by identity see each update.
    ``commit`` produces the final message with its own id and timestamp.
    """

    def __init__(self, character_id: str) -> None:
        self.character_id = character_id
        self._content = ""
        self.snapshot = Message(character_id=character_id, content="", type=MessageType.AI)
        self.chunks = 0

    @property
    def content(self) -> str:
        return self._content

    def feed(self, chunk: str) -> Message:
        if chunk:
            self._content += chunk
            self.chunks += 1
        self.snapshot = self.snapshot.model_copy(update={"content": self._content})
        return self.snapshot

    def commit(self) -> Message:
        logger.debug(f"turn_commit | character={self.character_id} chunks={self.chunks} chars={len(self._content)}")
        return Message(
            id=new_id(),
            character_id=self.character_id,
            content=self._content,
            timestamp=now_ms(),
            type=MessageType.AI,
        )
