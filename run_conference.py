from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Dict

from loguru import logger

from conference.config import MAX_ROUNDS, configure_logging, get_settings
from conference.manager import ConversationManager
from conference.models import ProviderBinding, ProviderKind
from conference.presets import PRESET_CHARACTERS
from conference.providers import HttpProviderAdapter, validate_api_key
from conference.states import ConversationPhase
from conference.storage import MemoryStore, PersistenceStore


def parse_args() -> argparse.Namespace:
    presets = ", ".join(f"{i}={p.name}" for i, p in enumerate(PRESET_CHARACTERS))
    p = argparse.ArgumentParser(description="Run a streamed multi-persona AI discussion in the terminal")
    p.add_argument("topic", nargs="?", help="Discussion topic")
    p.add_argument("--preset", type=int, action="append", default=[], help=f"Preset character index (repeat up to 3): {presets}")
    p.add_argument("--provider", type=str, choices=[k.value for k in ProviderKind], default=ProviderKind.DEEPSEEK.value, help="Provider for every selected preset")
    p.add_argument("--model", type=str, default="", help="Model id; defaults to the stored default model for the provider")
    p.add_argument("--api-key", type=str, default="", help="API key; falls back to <PROVIDER>_API_KEY or the stored key")
    p.add_argument("--base-url", type=str, default=None, help="Base URL for the custom provider")
    p.add_argument("--ephemeral", action="store_true", help="Keep everything in memory instead of the data directory")
    p.add_argument("--list-models", action="store_true", help="Print the provider's model list and exit")
    p.add_argument("--history", action="store_true", help="List stored conversations and exit")
    p.add_argument("--export", action="store_true", help="Print all stored data as JSON and exit")
    p.add_argument("--log-level", type=str, default=None, help="Log level (default from CONFERENCE_LOG_LEVEL)")
    return p.parse_args()


class TerminalPrinter:
    """Prints the live speaking message as it grows, one line per turn."""

    def __init__(self) -> None:
        self._printed: Dict[str, int] = {}
        self._current: str | None = None

    def __call__(self, manager: ConversationManager) -> None:
        conv = manager.conversation
        if conv is None:
            return
        live = conv.current_speaking_message
        if live is None:
            if self._current is not None:
                sys.stdout.write("\n\n")
                sys.stdout.flush()
                self._current = None
            return
        if live.id != self._current:
            speaker = conv.character(live.character_id)
            label = f"{speaker.avatar} {speaker.name}" if speaker else live.character_id
            sys.stdout.write(f"[round {conv.round + 1}] {label}: ")
            self._current = live.id
            self._printed[live.id] = 0
        done = self._printed.get(live.id, 0)
        if len(live.content) > done:
            sys.stdout.write(live.content[done:])
            sys.stdout.flush()
            self._printed[live.id] = len(live.content)


def resolve_api_key(args: argparse.Namespace, manager: ConversationManager) -> str:
    if args.api_key:
        return args.api_key
    env_key = os.getenv(f"{args.provider.upper()}_API_KEY", "")
    if env_key:
        return env_key
    return manager.api_keys.get(args.provider, "")


async def main() -> int:
    args = parse_args()
    configure_logging(args.log_level)

    store = PersistenceStore(MemoryStore()) if args.ephemeral else PersistenceStore.from_settings()
    adapter = HttpProviderAdapter()
    # Every round starts automatically here; there is nobody to advance it by hand.
    manager = ConversationManager(adapter, store, auto_advance_rounds=True)
    manager.restore()

    if args.history:
        for conv in manager.list_conversations():
            print(f"{conv.id}  round={conv.round:<2} messages={len(conv.messages):<3} {conv.topic}")
        return 0
    if args.export:
        print(store.export_data())
        return 0

    provider = ProviderKind(args.provider)
    api_key = resolve_api_key(args, manager)
    if api_key and not validate_api_key(provider, api_key):
        logger.warning(f"api_key_format | provider={provider.value} key does not look like a {provider.value} key")
    if api_key:
        manager.set_credential(provider, api_key)

    if args.list_models:
        for model in await manager.fetch_models(provider):
            print(model)
        return 0

    if not args.topic:
        logger.error("A discussion topic is required")
        return 2

    model = args.model or manager.default_models.get(provider.value, "")
    if args.model:
        manager.set_default_model(provider, args.model)
    binding = ProviderBinding(provider=provider, model=model, api_key=api_key, base_url=args.base_url)

    manager.go_back_to_setup()
    for index in args.preset or [0, 1, 2]:
        manager.add_preset(index, binding)

    manager.subscribe(TerminalPrinter())
    logger.info(f"Data directory: {get_settings().data_dir if not args.ephemeral else '(memory)'}")

    conversation = await manager.start(args.topic)
    if conversation is None:
        logger.error(manager.error or "Could not start the discussion")
        return 1

    try:
        while manager.phase is ConversationPhase.ACTIVE:
            await manager.wait_idle()
            if manager.error:
                break
            if manager.phase is ConversationPhase.ACTIVE:
                await manager.process_next_turn()
    finally:
        await manager.aclose()

    conv = manager.conversation
    if manager.error:
        logger.error(f"Discussion stopped: {manager.error}")
    result = {
        "id": conv.id if conv else None,
        "topic": args.topic,
        "rounds": conv.round if conv else 0,
        "max_rounds": MAX_ROUNDS,
        "messages": len(conv.messages) if conv else 0,
        "error": manager.error,
    }
    print(json.dumps(result, ensure_ascii=False, indent=2))
    return 0 if not manager.error else 1


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
