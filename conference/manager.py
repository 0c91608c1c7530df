from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .agents import build_turn_context
from .aggregator import StreamingAggregator
from .config import MAX_CHARACTERS, MAX_ROUNDS, EngineSettings, get_settings
from .errors import ConferenceError, ConnectivityError, StorageError
from .models import Character, Conversation, Message, ProviderBinding, ProviderKind, UserConfig
from .presets import PRESET_CHARACTERS
from .providers import ProviderAdapter
from .states import CharacterStatus, CharacterStatusTracker, ConversationPhase
from .storage import PersistenceStore


Listener = Callable[["ConversationManager"], Any]


def next_speaker(conversation: Conversation) -> Optional[Tuple[int, Character]]:
    count = len(conversation.characters)
    if count == 0:
        return None
    index = (conversation.current_speaker_index + 1) % count
    return index, conversation.characters[index]


def advance(conversation: Conversation, message: Message) -> Tuple[Conversation, bool]:
    """Append a committed message and move the turn pointer.

    Returns the updated conversation and whether this turn wrapped the pointer
    from the last roster position back to 0, which starts a new round.
    """
    count = len(conversation.characters)
    previous = conversation.current_speaker_index
    index = (previous + 1) % count
    wrapped = index == 0 and previous == count - 1
    updated = conversation.model_copy(
        update={
            "messages": [*conversation.messages, message],
            "current_speaking_message": None,
            "current_speaker_index": index,
            "round": conversation.round + (1 if wrapped else 0),
        }
    )
    return updated, wrapped


def validate_setup(topic: str, characters: List[Character]) -> List[str]:
    errors = []
    if not topic or not topic.strip():
        errors.append("Discussion topic must not be empty")
    if not characters:
        errors.append("Select at least one AI character")
    if len(characters) > MAX_CHARACTERS:
        errors.append(f"At most {MAX_CHARACTERS} AI characters can take part")
    for c in characters:
        if not c.binding.api_key or not c.binding.api_key.strip():
            errors.append(f"Character {c.name} has no API key")
        if not c.binding.model or not c.binding.model.strip():
            errors.append(f"Character {c.name} has no model")
        if c.binding.provider is ProviderKind.CUSTOM and not (c.binding.base_url or "").strip():
            errors.append(f"Character {c.name} uses a custom provider without a base URL")
    return errors


class ConversationManager:
    """Runs a round-robin discussion between up to three AI characters.

    Phases: setup (no conversation) -> active <-> paused -> completed. Each turn
    streams one character's reply, commits it, advances the speaker pointer and
    persists the conversation. Within a round the next turn is scheduled
    automatically after a short pause; a new round starts on a manual
    ``process_next_turn`` (or automatically with ``auto_advance_rounds``).
    The round cap is fixed at ``MAX_ROUNDS``.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        store: PersistenceStore,
        settings: Optional[EngineSettings] = None,
        *,
        start_delay: Optional[float] = None,
        turn_delay: Optional[float] = None,
        resume_delay: Optional[float] = None,
        auto_advance_rounds: Optional[bool] = None,
    ) -> None:
        settings = settings or get_settings()
        self.adapter = adapter
        self.store = store
        self.start_delay = settings.start_delay if start_delay is None else start_delay
        self.turn_delay = settings.turn_delay if turn_delay is None else turn_delay
        self.resume_delay = settings.resume_delay if resume_delay is None else resume_delay
        self.auto_advance_rounds = settings.auto_advance_rounds if auto_advance_rounds is None else auto_advance_rounds

        self.roster: List[Character] = []
        self.tracker = CharacterStatusTracker()
        self.conversation: Optional[Conversation] = None
        self.conversations: List[Conversation] = []
        self.api_keys: Dict[str, str] = {}
        self.default_models: Dict[str, str] = {}
        self.available_models: Dict[str, List[str]] = {}
        self.theme = "arcade"
        self.error: Optional[str] = None
        self.is_loading = False
        self.is_processing = False

        self._pending: Optional[asyncio.Task] = None
        self._running: Optional[asyncio.Task] = None
        # Bumped whenever the current conversation is replaced or reset so a
        # turn still streaming for the old state is not committed.
        self._generation = 0
        self._listeners: List[Listener] = []

    # ---- observable state ----------------------------------------------

    @property
    def phase(self) -> ConversationPhase:
        conv = self.conversation
        if conv is None:
            return ConversationPhase.SETUP
        if conv.round >= MAX_ROUNDS:
            return ConversationPhase.COMPLETED
        return ConversationPhase.ACTIVE if conv.is_active else ConversationPhase.PAUSED

    @property
    def characters(self) -> List[Character]:
        return [c.model_copy(update={"status": self.tracker.get(c.id)}) for c in self.roster]

    def status_of(self, character_id: str) -> CharacterStatus:
        return self.tracker.get(character_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("listener_failed")

    def _set_error(self, message: Optional[str]) -> None:
        self.error = message
        if message:
            logger.error(f"conference_error | {message}")
        self._notify()

    def dismiss_error(self) -> None:
        self._set_error(None)

    # ---- configuration -------------------------------------------------

    def restore(self) -> None:
        """Load user config, default models and history from the store."""
        config = self.store.load_user_config()
        self.api_keys = dict(config.api_keys)
        self.theme = config.theme
        self.roster = [c.model_copy(update={"status": CharacterStatus.IDLE}) for c in config.selected_characters]
        self.tracker = CharacterStatusTracker(c.id for c in self.roster)
        self.default_models = {
            kind.value: model for kind in ProviderKind if (model := self.store.load_default_model(kind))
        }
        self.conversations = self.store.list_conversations()
        active_id = self.store.get_active_conversation_id()
        if active_id and self.store.get_conversation(active_id) is not None:
            self.load_conversation(active_id)
        logger.info(f"state_restored | characters={len(self.roster)} conversations={len(self.conversations)}")
        self._notify()

    def _save_user_config(self) -> None:
        config = UserConfig(
            api_keys=dict(self.api_keys),
            selected_characters=[c.model_copy(update={"status": CharacterStatus.IDLE}) for c in self.roster],
            theme=self.theme,
        )
        try:
            self.store.save_user_config(config)
        except StorageError as e:
            self._set_error(str(e))

    def set_credential(self, provider: ProviderKind | str, api_key: str) -> None:
        self.api_keys[ProviderKind(provider).value] = api_key
        self._save_user_config()
        self._notify()

    def set_default_model(self, provider: ProviderKind | str, model: str) -> None:
        kind = ProviderKind(provider)
        self.default_models[kind.value] = model
        try:
            self.store.save_default_model(kind, model)
        except StorageError as e:
            self._set_error(str(e))
            return
        self._notify()

    async def fetch_models(self, provider: ProviderKind | str) -> List[str]:
        kind = ProviderKind(provider)
        cached = self.store.models.get_cached(kind)
        if cached is not None:
            self.available_models[kind.value] = cached
            self._notify()
            return cached
        models = await self.adapter.fetch_models(kind, self.api_keys.get(kind.value, ""))
        try:
            self.store.models.store(kind, models)
        except StorageError as e:
            logger.warning(f"model_cache_write_failed | provider={kind.value} | {e}")
        self.available_models[kind.value] = models
        self._notify()
        return models

    # ---- roster --------------------------------------------------------

    def add_character(
        self,
        name: str,
        binding: ProviderBinding,
        *,
        avatar: str = "",
        color: str = "#ffffff",
        personality: str = "",
        system_prompt: str = "",
    ) -> Optional[Character]:
        if len(self.roster) >= MAX_CHARACTERS:
            self._set_error(f"At most {MAX_CHARACTERS} AI characters can take part")
            return None
        character = Character(
            name=name,
            avatar=avatar,
            color=color,
            personality=personality,
            system_prompt=system_prompt,
            binding=binding,
        )
        return self._append_character(character)

    def add_preset(self, index: int, binding: ProviderBinding) -> Optional[Character]:
        if len(self.roster) >= MAX_CHARACTERS:
            self._set_error(f"At most {MAX_CHARACTERS} AI characters can take part")
            return None
        try:
            template = PRESET_CHARACTERS[index]
        except IndexError:
            self._set_error(f"Unknown preset character #{index}")
            return None
        return self._append_character(template.to_character(binding))

    def _append_character(self, character: Character) -> Character:
        self.roster = [*self.roster, character]
        self.tracker.track(character.id)
        logger.info(f"character_added | id={character.id} name={character.name} provider={character.binding.provider.value}")
        self._save_user_config()
        self._notify()
        return character

    def remove_character(self, character_id: str) -> None:
        self.roster = [c for c in self.roster if c.id != character_id]
        self.tracker.forget(character_id)
        self._save_user_config()
        self._notify()

    def update_character(self, character_id: str, **changes: Any) -> Optional[Character]:
        changes.pop("id", None)
        changes.pop("status", None)
        for i, c in enumerate(self.roster):
            if c.id == character_id:
                updated = Character.model_validate({**c.model_dump(), **changes, "id": c.id})
                self.roster = [*self.roster[:i], updated, *self.roster[i + 1:]]
                self._save_user_config()
                self._notify()
                return updated
        self._set_error(f"Unknown character {character_id}")
        return None

    # ---- scheduling ----------------------------------------------------

    def _schedule(self, delay: float) -> None:
        pending = self._pending
        if pending is not None and not pending.done():
            return
        self._pending = asyncio.create_task(self._delayed_turn(delay))

    async def _delayed_turn(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        task = asyncio.current_task()
        # Past the pacing sleep the task is a running turn and is never cancelled
        if self._pending is task:
            self._pending = None
        self._running = task
        try:
            await self.process_next_turn()
        finally:
            if self._running is task:
                self._running = None

    def _cancel_pending(self) -> None:
        pending = self._pending
        if pending is not None and not pending.done():
            pending.cancel()
        self._pending = None

    async def wait_idle(self) -> None:
        """Wait until no scheduled or running turn remains."""
        while True:
            tasks = {t for t in (self._pending, self._running) if t is not None and not t.done()}
            if not tasks:
                return
            await asyncio.wait(tasks)
            for task in tasks:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()

    async def aclose(self) -> None:
        tasks = [t for t in (self._pending, self._running) if t is not None]
        for task in tasks:
            task.cancel()
        self._pending = self._running = None
        await asyncio.gather(*tasks, return_exceptions=True)

    # ---- lifecycle commands --------------------------------------------

    def _set_active_id(self, conversation_id: Optional[str]) -> None:
        try:
            self.store.set_active_conversation_id(conversation_id)
        except StorageError as e:
            self._set_error(str(e))

    def _persist(self, conversation: Conversation) -> None:
        try:
            self.store.save_conversation(conversation)
        except StorageError as e:
            self._set_error(str(e))
            return
        self.conversations = self.store.list_conversations()

    async def start(self, topic: str) -> Optional[Conversation]:
        errors = validate_setup(topic, self.roster)
        if errors:
            self._set_error("\n".join(errors))
            return None

        self.is_loading = True
        self.error = None
        self._notify()
        try:
            for character in self.roster:
                if not await self.adapter.test_connection(character.binding):
                    raise ConnectivityError(
                        f"API connection failed for character {character.name}; check its configuration"
                    )
        except ConnectivityError as e:
            self.is_loading = False
            self._set_error(str(e))
            return None
        self.is_loading = False

        self._cancel_pending()
        self._generation += 1
        snapshot = [c.model_copy(update={"status": CharacterStatus.IDLE}, deep=True) for c in self.roster]
        conversation = Conversation(topic=topic, characters=snapshot, is_active=True, current_speaker_index=-1)
        self.tracker.reset()
        self.conversation = conversation
        self._persist(conversation)
        self._set_active_id(conversation.id)
        self._save_user_config()
        logger.info(f"conversation_start | id={conversation.id} characters={len(snapshot)} topic={topic!r}")
        self._notify()
        self._schedule(self.start_delay)
        return conversation

    async def process_next_turn(self) -> None:
        conv = self.conversation
        if conv is None or not conv.is_active or self.is_processing:
            return

        if conv.round >= MAX_ROUNDS:
            self._complete(conv)
            return

        picked = next_speaker(conv)
        if picked is None:
            logger.warning(f"no_speaker | conversation={conv.id}")
            return
        index, speaker = picked

        self.tracker.begin_attempt(speaker.id)
        self.is_processing = True
        generation = self._generation
        aggregator = StreamingAggregator(speaker.id)
        self._stage(aggregator.snapshot)
        logger.info(f"turn_start | round={conv.round} index={index} speaker={speaker.name}")

        try:
            message = await self._stream_turn(conv, speaker, aggregator, generation)
        except ConferenceError as e:
            self._abort_turn(speaker.id, generation, str(e))
            if generation != self._generation:
                self._resume_replacement()
            return
        except (Exception, asyncio.CancelledError):
            self._abort_turn(speaker.id, generation, None)
            raise

        if generation != self._generation or self.conversation is None:
            logger.warning(f"turn_discarded | speaker={speaker.name} | conversation was replaced mid-stream")
            self._finish_status(speaker.id)
            self.is_processing = False
            self._notify()
            self._resume_replacement()
            return

        updated, wrapped = advance(self.conversation, message)
        if updated.round >= MAX_ROUNDS:
            updated = updated.model_copy(update={"is_active": False})
            logger.info(f"conversation_completed | id={updated.id} rounds={updated.round}")
        self.conversation = updated
        self._finish_status(speaker.id)
        self._persist(updated)
        self.is_processing = False
        self._log_turn(speaker, updated, message)
        self._notify()

        if updated.is_active and updated.round < MAX_ROUNDS and (not wrapped or self.auto_advance_rounds):
            self._schedule(self.turn_delay)

    async def _stream_turn(
        self,
        conv: Conversation,
        speaker: Character,
        aggregator: StreamingAggregator,
        generation: int,
    ) -> Message:
        turns = build_turn_context(conv)
        async for chunk in self.adapter.stream_chat(speaker.binding, speaker.system_prompt, turns):
            if self.tracker.get(speaker.id) is CharacterStatus.THINKING:
                self.tracker.start_speaking(speaker.id)
            snapshot = aggregator.feed(chunk)
            if generation == self._generation:
                self._stage(snapshot)
        return aggregator.commit()

    def _stage(self, snapshot: Optional[Message]) -> None:
        if self.conversation is not None:
            self.conversation = self.conversation.model_copy(update={"current_speaking_message": snapshot})
        self._notify()

    def _finish_status(self, character_id: str) -> None:
        status = self.tracker.get(character_id)
        if status is CharacterStatus.THINKING:
            self.tracker.start_speaking(character_id)
        if status in (CharacterStatus.THINKING, CharacterStatus.SPEAKING):
            self.tracker.finish(character_id)

    def _abort_turn(self, character_id: str, generation: int, message: Optional[str]) -> None:
        current = generation == self._generation
        if current and self.tracker.get(character_id) in (CharacterStatus.THINKING, CharacterStatus.SPEAKING):
            self.tracker.fail(character_id)
        if current and self.conversation is not None:
            self.conversation = self.conversation.model_copy(update={"current_speaking_message": None})
        self.is_processing = False
        if message and current:
            logger.error(f"turn_failed | character={character_id} | {message}")
            self.error = message
        elif message:
            logger.warning(f"stale_turn_failed | character={character_id} | {message}")
        self._notify()

    def _resume_replacement(self) -> None:
        # The stale turn held the processing guard, so the replacement
        # conversation's own scheduled turn may have been skipped.
        conv = self.conversation
        if conv is not None and conv.is_active and conv.round < MAX_ROUNDS:
            self._schedule(0)

    def _complete(self, conv: Conversation) -> None:
        logger.info(f"round_limit_reached | id={conv.id} rounds={conv.round}")
        completed = conv.model_copy(update={"is_active": False, "current_speaking_message": None})
        self.conversation = completed
        self._persist(completed)
        self._notify()

    def toggle(self) -> None:
        conv = self.conversation
        if conv is None:
            return
        if conv.is_active:
            self.conversation = conv.model_copy(update={"is_active": False})
            self._cancel_pending()
            logger.info(f"conversation_paused | id={conv.id}")
        else:
            if conv.round >= MAX_ROUNDS:
                logger.info(f"conversation_completed | id={conv.id} cannot resume")
                return
            self.conversation = conv.model_copy(update={"is_active": True})
            logger.info(f"conversation_resumed | id={conv.id}")
            if not self.is_processing:
                self._schedule(self.resume_delay)
        self._persist(self.conversation)
        self._notify()

    def reset(self) -> None:
        conv = self.conversation
        if conv is None:
            return
        self._cancel_pending()
        self._generation += 1
        self.conversation = conv.model_copy(
            update={
                "messages": [],
                "is_active": False,
                "current_speaker_index": -1,
                "round": 0,
                "current_speaking_message": None,
            }
        )
        self.tracker.reset()
        self.error = None
        self._persist(self.conversation)
        logger.info(f"conversation_reset | id={conv.id}")
        self._notify()

    def go_back_to_setup(self) -> None:
        self._cancel_pending()
        self._generation += 1
        self.conversation = None
        self.roster = []
        self.tracker = CharacterStatusTracker()
        self.error = None
        self._set_active_id(None)
        self._notify()

    def list_conversations(self) -> List[Conversation]:
        self.conversations = self.store.list_conversations()
        return self.conversations

    def load_conversation(self, conversation_id: str) -> Optional[Conversation]:
        stored = self.store.get_conversation(conversation_id)
        if stored is None:
            self._set_error(f"Conversation {conversation_id} not found")
            return None
        self._cancel_pending()
        self._generation += 1
        # History opens paused; nothing is streaming for it.
        self.conversation = stored.model_copy(update={"is_active": False, "current_speaking_message": None})
        self.roster = [c.model_copy(update={"status": CharacterStatus.IDLE}) for c in stored.characters]
        self.tracker = CharacterStatusTracker(c.id for c in self.roster)
        self._set_active_id(stored.id)
        logger.info(f"conversation_loaded | id={stored.id} messages={len(stored.messages)} round={stored.round}")
        self._notify()
        return self.conversation

    def delete_conversation(self, conversation_id: str) -> None:
        try:
            self.store.delete_conversation(conversation_id)
        except StorageError as e:
            self._set_error(str(e))
            return
        self.conversations = self.store.list_conversations()
        if self.conversation is not None and self.conversation.id == conversation_id:
            self.go_back_to_setup()
        else:
            self._notify()

    def _log_turn(self, speaker: Character, conv: Conversation, message: Message) -> None:
        raw = message.content or ""
        snippet = raw if len(raw) <= 400 else raw[:400] + '...'
        # Single line so it always prints visibly
        one_line = ' '.join(snippet.split())
        logger.info(
            f"turn_commit | spk={speaker.name} idx={conv.current_speaker_index} round={conv.round} "
            f"messages={len(conv.messages)} | msg='{one_line}'"
        )
