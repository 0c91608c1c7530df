"""
Prompt assembly for a single persona turn.

Every prior message is replayed as a user message prefixed with the speaker's
name, after a synthetic opening message that states the topic. The system
prompt always comes first.
"""

from __future__ import annotations

from typing import Dict, List

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage, convert_to_openai_messages

from .models import Conversation


UNKNOWN_SPEAKER = "Unknown character"


def topic_message(topic: str) -> HumanMessage:
    return HumanMessage(content=f"Current discussion topic: {topic}")


def history_messages(conversation: Conversation) -> List[HumanMessage]:
    # Names come from the conversation's own roster snapshot
    names = {c.id: c.name for c in conversation.characters}
    return [
        HumanMessage(content=f"{names.get(msg.character_id, UNKNOWN_SPEAKER)}: {msg.content}")
        for msg in conversation.messages
    ]


def build_turn_context(conversation: Conversation) -> List[BaseMessage]:
    """Topic opener followed by the replayed discussion (no system prompt)."""
    return [topic_message(conversation.topic), *history_messages(conversation)]


def with_system(system_prompt: str, turns: List[BaseMessage]) -> List[BaseMessage]:
    return [SystemMessage(content=system_prompt), *turns]


def to_wire(messages: List[BaseMessage]) -> List[Dict[str, str]]:
    """Convert LangChain messages into OpenAI-style ``{role, content}`` dicts."""
    return [{"role": m["role"], "content": m["content"]} for m in convert_to_openai_messages(messages)]
