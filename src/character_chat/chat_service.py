from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import replace
from uuid import uuid4

from loguru import logger

from character_chat.compaction import MemoryCompactor
from character_chat.effects import (
    AppendMessages,
    CreditCreatorEarnings,
    DebitTokens,
    Effect,
    EmitEvent,
    RecordTurn,
)
from character_chat.errors import (
    CharacterNotFound,
    ChatError,
    ContentRejected,
    InternalError,
    InvalidRequest,
    NoteNotFound,
    PermissionDenied,
    SessionNotFound,
)
from character_chat.keyed_lock import KeyedLock
from character_chat.metering import TokenLedger
from character_chat.models import (
    ChatMode,
    ChatSession,
    MemorySummary,
    NoteCategory,
    NoteTarget,
    SessionStateUpdate,
    UserNote,
)
from character_chat.session_state import apply_update
from character_chat.storage import (
    AccountRepository,
    CatalogRepository,
    ChatStore,
    EventEmitter,
    NoteRepository,
    SessionRepository,
    SummaryRepository,
)
from character_chat.storage.events import utc_now
from character_chat.streaming import ChunkEvent, DoneEvent, ErrorEvent, StreamEvent
from character_chat.turn_engine import TurnEngine, TurnOutcome, TurnRequest


class ChatService:
    """Entry point for chat sessions, turns and user notes.

    Turns on one session run one at a time. A turn's effects are applied in a
    single store transaction under the user's ledger lock: either the debit,
    earnings credit, messages and session update all land, or none do.
    """

    def __init__(
        self,
        store: ChatStore,
        engine: TurnEngine,
        *,
        ledger: TokenLedger | None = None,
        compactor: MemoryCompactor | None = None,
        memory_summary_limit: int = 3,
    ) -> None:
        self._store = store
        self._engine = engine
        self._sessions = SessionRepository(store)
        self._summaries = SummaryRepository(store)
        self._notes = NoteRepository(store)
        self._catalog = CatalogRepository(store)
        self._accounts = AccountRepository(store)
        self._events = EventEmitter(store)
        self._ledger = ledger or TokenLedger(self._accounts, engine.policy)
        self._compactor = compactor
        self._memory_summary_limit = memory_summary_limit
        self._session_locks = KeyedLock()
        self._background_tasks: set[asyncio.Task] = set()

    # -- turns -------------------------------------------------------------

    async def send_message(self, session_id: str, user_id: str, text: str) -> ChatSession:
        """Run one blocking turn and return the updated session."""
        async with self._session_locks.hold(session_id):
            request = self._load_turn(session_id, user_id, text)
            try:
                outcome = await self._engine.run(request)
                await self._commit(outcome)
            except ContentRejected as ex:
                self._record_block(session_id, ex)
                raise
            except ChatError:
                raise
            except Exception as ex:
                logger.error(f"Turn failed: session={session_id}: {type(ex).__name__}: {ex}")
                raise InternalError() from ex
            session = self._sessions.get(session_id)

        self._schedule_compaction(session)
        return session

    async def stream_message(self, session_id: str, user_id: str, text: str) -> AsyncIterator[StreamEvent]:
        """Run one streamed turn.

        Yields ChunkEvent in generation order, then exactly one DoneEvent or
        ErrorEvent. Closing the generator before the terminal event aborts
        the provider stream and persists nothing.
        """
        async with self._session_locks.hold(session_id):
            try:
                request = self._load_turn(session_id, user_id, text)
                context = await self._engine.prepare(request)
            except ChatError as ex:
                if isinstance(ex, ContentRejected):
                    self._record_block(session_id, ex)
                yield ErrorEvent(ex.kind, ex.reason)
                return
            except Exception as ex:
                yield self._internal_error(session_id, ex)
                return

            stream = self._engine.router.stream(request.session.provider_id, context.system_prompt, context.messages)
            try:
                async for chunk in stream:
                    yield ChunkEvent(chunk)
                outcome = await self._engine.finish(
                    request, context, stream.content, stream.tokens_used, estimated=stream.estimated
                )
                await self._commit(outcome)
            except ChatError as ex:
                if isinstance(ex, ContentRejected):
                    self._record_block(session_id, ex)
                yield ErrorEvent(ex.kind, ex.reason)
                return
            except Exception as ex:
                yield self._internal_error(session_id, ex)
                return
            finally:
                if not stream.done:
                    logger.info(f"Stream aborted before completion: session={session_id}")
                    await stream.aclose()

        self._schedule_compaction(outcome.session)
        yield DoneEvent(
            tokens_used=outcome.tokens_used,
            token_cost=outcome.token_cost,
            suggested_replies=outcome.suggestions,
            estimated=outcome.estimated,
        )

    def _internal_error(self, session_id: str, ex: Exception) -> ErrorEvent:
        logger.error(f"Streamed turn failed: session={session_id}: {type(ex).__name__}: {ex}")
        error = InternalError()
        return ErrorEvent(error.kind, error.reason)

    def _load_turn(self, session_id: str, user_id: str, text: str) -> TurnRequest:
        text = text.strip()
        if not text:
            raise InvalidRequest("Message cannot be empty.")

        session = self._owned_session(session_id, user_id)
        user = self._accounts.get_user(user_id)
        if user is None:
            raise PermissionDenied("Unknown user.")
        character = self._catalog.get_character(session.character_id)
        if character is None:
            raise CharacterNotFound(session.character_id)

        return TurnRequest(
            session=session,
            user=user,
            text=text,
            character=character,
            world=self._catalog.get_world(character.world_id) if character.world_id else None,
            preset=self._catalog.get_preset(session.preset_id) if session.preset_id else None,
            summaries=self._summaries.list_recent(session_id, self._memory_summary_limit),
            notes=self._notes.list_context_notes(session_id, character.id, user_id),
            creator=self._accounts.get_user(character.creator_id),
        )

    async def _commit(self, outcome: TurnOutcome) -> None:
        async with self._ledger.lock_for(outcome.session.user_id):
            with self._store.transaction():
                for effect in outcome.effects:
                    self._apply(effect)

    def _apply(self, effect: Effect) -> None:
        if isinstance(effect, DebitTokens):
            self._ledger.apply_debit(effect.user_id, effect.amount)
        elif isinstance(effect, CreditCreatorEarnings):
            self._ledger.apply_credit(effect.creator_id, effect.character_id, effect.cost, effect.period)
        elif isinstance(effect, AppendMessages):
            self._sessions.append_messages(effect.session_id, list(effect.messages))
        elif isinstance(effect, RecordTurn):
            self._sessions.record_turn(effect.session_id, effect.tokens_used, effect.last_activity)
        elif isinstance(effect, EmitEvent):
            self._events.emit(effect.session_id, effect.event_type, effect.payload)
        else:
            raise TypeError(f"Unknown effect: {effect!r}")

    def _record_block(self, session_id: str, ex: ContentRejected) -> None:
        self._events.emit(session_id, "moderation.blocked", {"stage": ex.stage, "category": ex.category})

    # -- compaction ----------------------------------------------------------

    def _schedule_compaction(self, session: ChatSession) -> None:
        if self._compactor is None:
            return
        task = asyncio.create_task(self._compactor.compact(session.id, session.provider_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        ex = task.exception()
        if ex is not None:
            logger.error(f"Background compaction crashed: {type(ex).__name__}: {ex}")

    async def drain(self) -> None:
        """Wait for in-flight background compaction."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # -- sessions ------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        character_id: str,
        *,
        provider_id: str | None = None,
        mode: ChatMode = ChatMode.CHAT,
        preset_id: str | None = None,
        title: str | None = None,
    ) -> ChatSession:
        character = self._catalog.get_character(character_id)
        if character is None:
            raise CharacterNotFound(character_id)
        if preset_id is not None:
            preset = self._catalog.get_preset(preset_id)
            if preset is None or preset.character_id != character_id:
                raise InvalidRequest(f"Preset {preset_id} is not available for this character.")
        chosen_provider = provider_id or character.default_provider_id
        self._require_known_provider(chosen_provider)

        with self._store.transaction():
            session = self._sessions.create(
                ChatSession(
                    id=str(uuid4()),
                    user_id=user_id,
                    character_id=character_id,
                    provider_id=chosen_provider,
                    mode=ChatMode(mode),
                    last_activity=utc_now(),
                    preset_id=preset_id,
                    title=title or f"{character.name} chat",
                )
            )
            self._events.emit(
                session.id,
                "session.created",
                {"character_id": character_id, "provider_id": chosen_provider, "mode": str(session.mode)},
            )
        logger.info(f"Session created: id={session.id}, user={user_id}, character={character_id}")
        return session

    def get_session(self, session_id: str, user_id: str) -> ChatSession:
        return self._owned_session(session_id, user_id)

    def list_sessions(self, user_id: str, *, limit: int = 50) -> list[ChatSession]:
        return self._sessions.list_for_user(user_id, limit=limit)

    async def delete_session(self, session_id: str, user_id: str) -> None:
        """Delete once any in-flight turn on the session has committed or failed."""
        async with self._session_locks.hold(session_id):
            self._owned_session(session_id, user_id)
            with self._store.transaction():
                self._notes.delete_for_session(session_id)
                self._sessions.delete(session_id)
        logger.info(f"Session deleted: id={session_id}")

    def rename_session(self, session_id: str, user_id: str, title: str) -> ChatSession:
        title = title.strip()
        if not title:
            raise InvalidRequest("Title cannot be empty.")
        return self._update_header(session_id, user_id, title=title)

    def change_mode(self, session_id: str, user_id: str, mode: ChatMode | str) -> ChatSession:
        try:
            new_mode = ChatMode(mode)
        except ValueError:
            raise InvalidRequest(f"Unknown chat mode: {mode}") from None
        return self._update_header(session_id, user_id, mode=new_mode)

    def change_provider(self, session_id: str, user_id: str, provider_id: str) -> ChatSession:
        self._require_known_provider(provider_id)
        return self._update_header(session_id, user_id, provider_id=provider_id)

    def update_session_state(self, session_id: str, user_id: str, update: SessionStateUpdate) -> ChatSession:
        session = self._owned_session(session_id, user_id)
        return self._update_header(session_id, user_id, state=apply_update(session.state, update))

    def list_summaries(self, session_id: str, user_id: str) -> list[MemorySummary]:
        self._owned_session(session_id, user_id)
        return self._summaries.list_all(session_id)

    def memory_stats(self, session_id: str, user_id: str) -> dict:
        session = self._owned_session(session_id, user_id)
        stats = self._summaries.stats(session_id)
        stats["compacted_batches"] = session.compacted_batches
        stats["message_count"] = len(session.messages)
        return stats

    def event_log(self, session_id: str, user_id: str, *, event_type: str | None = None) -> list[dict]:
        self._owned_session(session_id, user_id)
        return self._events.list_events(session_id, event_type=event_type)

    def _update_header(self, session_id: str, user_id: str, **changes) -> ChatSession:
        session = self._owned_session(session_id, user_id).with_changes(**changes)
        self._sessions.save(session)
        return self._sessions.get(session_id)

    def _owned_session(self, session_id: str, user_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.user_id != user_id:
            raise PermissionDenied()
        return session

    def _require_known_provider(self, provider_id: str) -> None:
        if provider_id not in self._engine.router.provider_ids:
            raise InvalidRequest(f"Unknown AI model: {provider_id}")

    # -- notes ---------------------------------------------------------------

    def create_note(
        self,
        user_id: str,
        target_type: NoteTarget | str,
        target_id: str,
        content: str,
        *,
        category: NoteCategory | str = NoteCategory.MEMORY,
        is_pinned: bool = False,
        include_in_context: bool = True,
    ) -> UserNote:
        target = NoteTarget(target_type)
        if target == NoteTarget.SESSION:
            self._owned_session(target_id, user_id)
        elif self._catalog.get_character(target_id) is None:
            raise CharacterNotFound(target_id)
        content = content.strip()
        if not content:
            raise InvalidRequest("Note content cannot be empty.")

        return self._notes.create(
            UserNote(
                id=str(uuid4()),
                user_id=user_id,
                target_type=target,
                target_id=target_id,
                content=content,
                category=NoteCategory(category),
                is_pinned=is_pinned,
                include_in_context=include_in_context,
                created_at=utc_now(),
            )
        )

    def update_note(
        self,
        note_id: str,
        user_id: str,
        *,
        content: str | None = None,
        category: NoteCategory | str | None = None,
        is_pinned: bool | None = None,
        include_in_context: bool | None = None,
    ) -> UserNote:
        note = self._owned_note(note_id, user_id)
        changes: dict = {}
        if content is not None:
            if not content.strip():
                raise InvalidRequest("Note content cannot be empty.")
            changes["content"] = content.strip()
        if category is not None:
            changes["category"] = NoteCategory(category)
        if is_pinned is not None:
            changes["is_pinned"] = is_pinned
        if include_in_context is not None:
            changes["include_in_context"] = include_in_context
        return self._save_note(note, changes)

    def toggle_pin(self, note_id: str, user_id: str) -> UserNote:
        note = self._owned_note(note_id, user_id)
        return self._save_note(note, {"is_pinned": not note.is_pinned})

    def toggle_include_in_context(self, note_id: str, user_id: str) -> UserNote:
        note = self._owned_note(note_id, user_id)
        return self._save_note(note, {"include_in_context": not note.include_in_context})

    def delete_note(self, note_id: str, user_id: str) -> None:
        self._owned_note(note_id, user_id)
        self._notes.delete(note_id)

    def list_notes(self, user_id: str, target_type: NoteTarget | str, target_id: str) -> list[UserNote]:
        return self._notes.list_for_target(user_id, NoteTarget(target_type), target_id)

    def _owned_note(self, note_id: str, user_id: str) -> UserNote:
        note = self._notes.get(note_id)
        if note is None:
            raise NoteNotFound(note_id)
        if note.user_id != user_id:
            raise PermissionDenied("You do not have permission to change this note.")
        return note

    def _save_note(self, note: UserNote, changes: dict) -> UserNote:
        updated = replace(note, **changes)
        self._notes.save(updated)
        return updated
