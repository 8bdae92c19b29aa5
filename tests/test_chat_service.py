import asyncio
import sqlite3
from unittest.mock import patch

from character_chat.chat_service import ChatService
from character_chat.compaction import MemoryCompactor
from character_chat.errors import (
    CharacterNotFound,
    ContentRejected,
    InsufficientBalance,
    InternalError,
    InvalidRequest,
    NoteNotFound,
    PermissionDenied,
    ProviderError,
    SessionNotFound,
)
from character_chat.metering import period_key
from character_chat.models import ChatMode, NoteTarget, PersonaPreset, Sender, SessionStateUpdate, User
from character_chat.moderation.gate import ModerationGate
from character_chat.streaming import ChunkEvent, DoneEvent, ErrorEvent
from character_chat.turn_engine import TurnEngine
from tests.fakes import FakeProvider, make_router
from tests.storage.base import ChatStoreTestCase

STORY_REPLY = (
    "*Mira points at the horizon.* Land ho!\n"
    "[SUGGESTIONS]\n1. Grab the spyglass\n2. Ask which island\n3. Head below deck\n[/SUGGESTIONS]"
)


async def _collect(stream) -> list:
    return [event async for event in stream]


class ChatServiceTestCase(ChatStoreTestCase):
    def _service(
        self,
        provider: FakeProvider,
        *,
        gate: ModerationGate | None = None,
        batch_size: int | None = None,
    ) -> ChatService:
        router = make_router(provider)
        compactor = None
        if batch_size is not None:
            compactor = MemoryCompactor(self._sessions, self._summaries, router, batch_size=batch_size, events=self._events)
        return ChatService(self._store, TurnEngine(router=router, gate=gate), compactor=compactor)

    def _balance(self) -> float:
        return self._accounts.get_user("user-1").tokens


class SendMessageTests(ChatServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.seed_accounts(tokens=10.0)
        self.provider = FakeProvider(["Ahoy, captain!"], tokens_used=1000)
        self.service = self._service(self.provider)
        self.session = self.service.create_session("user-1", "char-1")

    def test_turn_is_persisted_debited_and_credited(self) -> None:
        updated = asyncio.run(self.service.send_message(self.session.id, "user-1", "  Hello Mira  "))

        self.assertEqual([Sender.USER, Sender.AI], [m.sender for m in updated.messages])
        self.assertEqual("Hello Mira", updated.messages[0].content)
        self.assertEqual("Ahoy, captain!", updated.messages[1].content)
        self.assertEqual(1000, updated.messages[1].tokens_used)
        self.assertLessEqual(updated.messages[0].timestamp, updated.messages[1].timestamp)
        self.assertEqual(1000, updated.total_tokens_used)

        stored = self.service.get_session(self.session.id, "user-1")
        self.assertEqual(updated.messages, stored.messages)
        self.assertEqual(1000, stored.total_tokens_used)
        self.assertAlmostEqual(8.5, self._balance())

        bucket = self._accounts.get_earnings("creator-1", "char-1", period_key())
        self.assertEqual(1, bucket.conversation_count)
        self.assertAlmostEqual(0.45, bucket.tokens_earned)

        events = self.service.event_log(self.session.id, "user-1")
        self.assertEqual(["session.created", "turn.completed"], [e["type"] for e in events])
        self.assertEqual(1.5, events[1]["payload"]["token_cost"])
        self.assertFalse(events[1]["payload"]["estimated"])

    def test_prompt_contains_history_and_character(self) -> None:
        asyncio.run(self.service.send_message(self.session.id, "user-1", "First"))
        asyncio.run(self.service.send_message(self.session.id, "user-1", "Second"))

        call = self.provider.calls[-1]
        self.assertIn('"Mira"', call["system_prompt"])
        self.assertEqual(
            [("user", "First"), ("assistant", "Ahoy, captain!"), ("user", "Second")],
            [(m["role"], m["content"]) for m in call["messages"]],
        )

    def test_zero_balance_is_rejected_before_generation(self) -> None:
        self._accounts.save_user(User("user-1", tokens=0.0))

        with self.assertRaises(InsufficientBalance):
            asyncio.run(self.service.send_message(self.session.id, "user-1", "Hello"))

        self.assertEqual([], self.provider.calls)
        self.assertEqual((), self.service.get_session(self.session.id, "user-1").messages)

    def test_failed_debit_after_generation_persists_nothing(self) -> None:
        self._accounts.debit("user-1", 9.4)

        with self.assertRaises(InsufficientBalance):
            asyncio.run(self.service.send_message(self.session.id, "user-1", "Hello"))

        self.assertEqual(1, len(self.provider.calls))
        self.assertAlmostEqual(0.6, self._balance())
        self.assertEqual((), self.service.get_session(self.session.id, "user-1").messages)
        self.assertIsNone(self._accounts.get_earnings("creator-1", "char-1", period_key()))
        self.assertEqual([], self.service.event_log(self.session.id, "user-1", event_type="turn.completed"))

    def test_access_errors(self) -> None:
        with self.assertRaises(PermissionDenied):
            asyncio.run(self.service.send_message(self.session.id, "intruder", "Hello"))
        with self.assertRaises(SessionNotFound):
            asyncio.run(self.service.send_message("missing", "user-1", "Hello"))
        with self.assertRaises(InvalidRequest):
            asyncio.run(self.service.send_message(self.session.id, "user-1", "   "))
        self.assertEqual([], self.provider.calls)

    def test_provider_failure_persists_nothing(self) -> None:
        self.provider.error = RuntimeError("down")

        with self.assertRaises(ProviderError):
            asyncio.run(self.service.send_message(self.session.id, "user-1", "Hello"))

        self.assertAlmostEqual(10.0, self._balance())
        self.assertEqual((), self.service.get_session(self.session.id, "user-1").messages)

    def test_story_mode_stores_suggestions(self) -> None:
        self.provider.replies = [STORY_REPLY]
        story = self.service.create_session("user-1", "char-1", mode=ChatMode.STORY)

        updated = asyncio.run(self.service.send_message(story.id, "user-1", "What do you see?"))

        reply = updated.messages[-1]
        self.assertEqual("*Mira points at the horizon.* Land ho!", reply.content)
        self.assertEqual(("Grab the spyglass", "Ask which island", "Head below deck"), reply.suggested_replies)
        self.assertIn("[SUGGESTIONS]", self.provider.calls[0]["system_prompt"])

    def test_unknown_session_provider_uses_default_route(self) -> None:
        self._sessions.save(self.session.with_changes(provider_id="retired-model"))

        asyncio.run(self.service.send_message(self.session.id, "user-1", "Hello"))

        self.assertEqual("fake-gpt", self.provider.calls[0]["model"])

    def test_unexpected_failure_is_reported_as_internal_error(self) -> None:
        with patch.object(self.service, "_commit", side_effect=sqlite3.OperationalError("database is locked")):
            with self.assertRaises(InternalError) as raised:
                asyncio.run(self.service.send_message(self.session.id, "user-1", "Hello"))

        self.assertNotIn("database", raised.exception.reason)
        self.assertEqual((), self.service.get_session(self.session.id, "user-1").messages)

    def test_returned_session_reflects_stored_header(self) -> None:
        self.service.change_mode(self.session.id, "user-1", ChatMode.STORY)

        updated = asyncio.run(self.service.send_message(self.session.id, "user-1", "Hello"))

        self.assertEqual(ChatMode.STORY, updated.mode)
        self.assertEqual(1000, updated.total_tokens_used)

    def test_concurrent_turns_on_one_session_are_serialized(self) -> None:
        self.provider.delay = 0.01

        async def run():
            await asyncio.gather(
                self.service.send_message(self.session.id, "user-1", "one"),
                self.service.send_message(self.session.id, "user-1", "two"),
            )

        asyncio.run(run())

        messages = self.service.get_session(self.session.id, "user-1").messages
        self.assertEqual([Sender.USER, Sender.AI, Sender.USER, Sender.AI], [m.sender for m in messages])
        self.assertEqual(4, len(messages))
        self.assertEqual(3, len(self.provider.calls[1]["messages"]))


class ModerationTests(ChatServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.seed_accounts(tokens=10.0)

    def test_rejected_input_never_reaches_the_model(self) -> None:
        provider = FakeProvider(["fine"], tokens_used=100)
        service = self._service(provider, gate=ModerationGate())
        session = service.create_session("user-1", "char-1")

        with self.assertRaises(ContentRejected) as ctx:
            asyncio.run(service.send_message(session.id, "user-1", "you shit"))

        self.assertEqual("banned_word", ctx.exception.category)
        self.assertEqual([], provider.calls)
        events = service.event_log(session.id, "user-1", event_type="moderation.blocked")
        self.assertEqual([{"stage": "input", "category": "banned_word"}], [e["payload"] for e in events])

    def test_rejected_output_is_not_persisted_or_charged(self) -> None:
        provider = FakeProvider(["Call me at 010-1234-5678"], tokens_used=100)
        service = self._service(provider, gate=ModerationGate())
        session = service.create_session("user-1", "char-1")

        with self.assertRaises(ContentRejected) as ctx:
            asyncio.run(service.send_message(session.id, "user-1", "Hello Mira"))

        self.assertEqual("output", ctx.exception.stage)
        self.assertEqual("personal_info", ctx.exception.category)
        self.assertAlmostEqual(10.0, self._balance())
        self.assertEqual((), service.get_session(session.id, "user-1").messages)


class StreamMessageTests(ChatServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.seed_accounts(tokens=10.0)

    def test_chunks_then_done(self) -> None:
        provider = FakeProvider(chunks=["Ah", "oy", "!"], tokens_used=40)
        service = self._service(provider)
        session = service.create_session("user-1", "char-1")

        events = asyncio.run(_collect(service.stream_message(session.id, "user-1", "Hello")))

        self.assertEqual([ChunkEvent("Ah"), ChunkEvent("oy"), ChunkEvent("!")], events[:3])
        self.assertEqual(DoneEvent(tokens_used=40, token_cost=0.5, suggested_replies=[]), events[3])
        self.assertEqual(4, len(events))
        stored = service.get_session(session.id, "user-1")
        self.assertEqual("Ahoy!", stored.messages[-1].content)
        self.assertAlmostEqual(9.5, self._balance())

    def test_estimated_usage_is_flagged(self) -> None:
        provider = FakeProvider(chunks=["abcd", "efgh"])
        service = self._service(provider)
        session = service.create_session("user-1", "char-1")

        events = asyncio.run(_collect(service.stream_message(session.id, "user-1", "Hello")))

        self.assertEqual(2, events[-1].tokens_used)
        self.assertTrue(events[-1].estimated)

    def test_story_suggestions_arrive_with_done(self) -> None:
        provider = FakeProvider(chunks=[STORY_REPLY[:20], STORY_REPLY[20:]], tokens_used=40)
        service = self._service(provider)
        session = service.create_session("user-1", "char-1", mode=ChatMode.STORY)

        events = asyncio.run(_collect(service.stream_message(session.id, "user-1", "Look")))

        self.assertEqual(["Grab the spyglass", "Ask which island", "Head below deck"], events[-1].suggested_replies)
        self.assertEqual("*Mira points at the horizon.* Land ho!", service.get_session(session.id, "user-1").messages[-1].content)

    def test_rejected_before_generation_yields_error(self) -> None:
        self._accounts.debit("user-1", 10.0)
        provider = FakeProvider(chunks=["never"])
        service = self._service(provider)
        session = service.create_session("user-1", "char-1")

        events = asyncio.run(_collect(service.stream_message(session.id, "user-1", "Hello")))

        self.assertEqual([ErrorEvent("insufficient_balance", InsufficientBalance().reason)], events)
        self.assertEqual([], provider.stream_calls)

    def test_provider_failure_yields_error_and_persists_nothing(self) -> None:
        provider = FakeProvider(chunks=["x"], error=RuntimeError("boom"))
        service = self._service(provider)
        session = service.create_session("user-1", "char-1")

        events = asyncio.run(_collect(service.stream_message(session.id, "user-1", "Hello")))

        self.assertEqual(1, len(events))
        self.assertEqual("provider_error", events[0].kind)
        self.assertEqual((), service.get_session(session.id, "user-1").messages)
        self.assertAlmostEqual(10.0, self._balance())

    def test_abort_closes_provider_and_persists_nothing(self) -> None:
        provider = FakeProvider(chunks=["one", "two", "three"], tokens_used=40)
        service = self._service(provider)
        session = service.create_session("user-1", "char-1")

        async def run():
            stream = service.stream_message(session.id, "user-1", "Hello")
            first = await anext(stream)
            await stream.aclose()
            return first

        first = asyncio.run(run())

        self.assertEqual(ChunkEvent("one"), first)
        self.assertTrue(provider.stream_closed)
        self.assertEqual((), service.get_session(session.id, "user-1").messages)
        self.assertAlmostEqual(10.0, self._balance())

    def test_header_updates_during_a_turn_survive_its_commit(self) -> None:
        provider = FakeProvider(chunks=["one", "two"], tokens_used=100)
        service = self._service(provider)
        session = service.create_session("user-1", "char-1")

        async def run():
            stream = service.stream_message(session.id, "user-1", "Hello")
            events = [await anext(stream)]
            service.update_session_state(session.id, "user-1", SessionStateUpdate(mood="angry", relationship_level=4))
            service.change_mode(session.id, "user-1", ChatMode.STORY)
            service.rename_session(session.id, "user-1", "Storm")
            events.extend([event async for event in stream])
            return events

        events = asyncio.run(run())

        self.assertEqual(DoneEvent(tokens_used=100, token_cost=0.5, suggested_replies=[]), events[-1])
        stored = service.get_session(session.id, "user-1")
        self.assertEqual(("angry", 4), (stored.state.mood, stored.state.relationship_level))
        self.assertEqual(ChatMode.STORY, stored.mode)
        self.assertEqual("Storm", stored.title)
        self.assertEqual(100, stored.total_tokens_used)
        self.assertEqual(2, len(stored.messages))

    def test_delete_waits_for_the_running_turn(self) -> None:
        provider = FakeProvider(chunks=["one", "two"], tokens_used=40)
        service = self._service(provider)
        session = service.create_session("user-1", "char-1")

        async def run():
            stream = service.stream_message(session.id, "user-1", "Hello")
            events = [await anext(stream)]
            deletion = asyncio.create_task(service.delete_session(session.id, "user-1"))
            await asyncio.sleep(0)
            self.assertFalse(deletion.done())
            events.extend([event async for event in stream])
            await deletion
            return events

        events = asyncio.run(run())

        self.assertIsInstance(events[-1], DoneEvent)
        self.assertEqual(1, sum(isinstance(e, (DoneEvent, ErrorEvent)) for e in events))
        with self.assertRaises(SessionNotFound):
            service.get_session(session.id, "user-1")
        self.assertAlmostEqual(9.5, self._balance())

    def test_unexpected_commit_failure_yields_internal_error(self) -> None:
        provider = FakeProvider(chunks=["one", "two"], tokens_used=40)
        service = self._service(provider)
        session = service.create_session("user-1", "char-1")

        with patch.object(service, "_commit", side_effect=sqlite3.IntegrityError("FOREIGN KEY constraint failed")):
            events = asyncio.run(_collect(service.stream_message(session.id, "user-1", "Hello")))

        self.assertEqual([ChunkEvent("one"), ChunkEvent("two")], events[:2])
        self.assertEqual([ErrorEvent("internal_error", InternalError().reason)], events[2:])
        self.assertEqual((), service.get_session(session.id, "user-1").messages)
        self.assertAlmostEqual(10.0, self._balance())


class CompactionTriggerTests(ChatServiceTestCase):
    def test_completed_batches_are_summarized_in_background(self) -> None:
        self.seed_accounts(tokens=10.0)
        provider = FakeProvider(["reply one", "reply two", "They met on deck and set sail."], tokens_used=100)
        service = self._service(provider, batch_size=4)
        session = service.create_session("user-1", "char-1")

        async def run():
            await service.send_message(session.id, "user-1", "one")
            await service.drain()
            await service.send_message(session.id, "user-1", "two")
            await service.drain()

        asyncio.run(run())

        summaries = service.list_summaries(session.id, "user-1")
        self.assertEqual(["They met on deck and set sail."], [s.summary_text for s in summaries])
        stats = service.memory_stats(session.id, "user-1")
        self.assertEqual(1, stats["summary_count"])
        self.assertEqual(1, stats["compacted_batches"])
        self.assertEqual(4, stats["message_count"])
        self.assertEqual({"start": 0, "end": 4}, stats["latest_summary_range"])

        asyncio.run(service.send_message(session.id, "user-1", "three"))
        self.assertIn("[1] They met on deck and set sail.", provider.calls[-1]["system_prompt"])


class SessionOperationTests(ChatServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.seed_accounts(tokens=10.0)
        self.provider = FakeProvider(["ok"], tokens_used=100)
        self.service = self._service(self.provider)

    def test_create_session_defaults(self) -> None:
        session = self.service.create_session("user-1", "char-1")

        self.assertEqual("Mira chat", session.title)
        self.assertEqual("gpt4", session.provider_id)
        self.assertEqual(ChatMode.CHAT, session.mode)
        self.assertEqual([session.id], [s.id for s in self.service.list_sessions("user-1")])

    def test_create_session_validation(self) -> None:
        self._catalog.save_preset(PersonaPreset("p-1", "char-1", "First mate", "Crewmate"))

        with self.assertRaises(CharacterNotFound):
            self.service.create_session("user-1", "nobody")
        with self.assertRaises(InvalidRequest):
            self.service.create_session("user-1", "char-1", provider_id="mystery")
        with self.assertRaises(InvalidRequest):
            self.service.create_session("user-1", "char-1", preset_id="p-missing")

        session = self.service.create_session("user-1", "char-1", preset_id="p-1", provider_id="grok", title="Voyage")
        self.assertEqual(("p-1", "grok", "Voyage"), (session.preset_id, session.provider_id, session.title))

    def test_header_updates(self) -> None:
        session = self.service.create_session("user-1", "char-1")

        self.assertEqual("Night watch", self.service.rename_session(session.id, "user-1", " Night watch ").title)
        self.assertEqual(ChatMode.STORY, self.service.change_mode(session.id, "user-1", "story").mode)
        self.assertEqual("claude3", self.service.change_provider(session.id, "user-1", "claude3").provider_id)

        with self.assertRaises(InvalidRequest):
            self.service.change_mode(session.id, "user-1", "karaoke")
        with self.assertRaises(InvalidRequest):
            self.service.change_provider(session.id, "user-1", "mystery")
        with self.assertRaises(InvalidRequest):
            self.service.rename_session(session.id, "user-1", "  ")
        with self.assertRaises(PermissionDenied):
            self.service.rename_session(session.id, "intruder", "Mine now")

    def test_update_session_state_clamps(self) -> None:
        session = self.service.create_session("user-1", "char-1")

        updated = self.service.update_session_state(
            session.id, "user-1", SessionStateUpdate(mood="tense", relationship_level=12, scene="the brig"),
        )

        self.assertEqual(("tense", 5, "the brig"), (updated.state.mood, updated.state.relationship_level, updated.state.scene))
        asyncio.run(self.service.send_message(session.id, "user-1", "Hello"))
        self.assertIn("- Scene: the brig", self.provider.calls[0]["system_prompt"])

    def test_delete_session_removes_session_and_its_notes(self) -> None:
        session = self.service.create_session("user-1", "char-1")
        self.service.create_note("user-1", NoteTarget.SESSION, session.id, "Remember the map.")
        self.service.create_note("user-1", NoteTarget.CHARACTER, "char-1", "Mira likes tea.")

        asyncio.run(self.service.delete_session(session.id, "user-1"))

        with self.assertRaises(SessionNotFound):
            self.service.get_session(session.id, "user-1")
        self.assertEqual([], self.service.list_notes("user-1", NoteTarget.SESSION, session.id))
        self.assertEqual(1, len(self.service.list_notes("user-1", NoteTarget.CHARACTER, "char-1")))


class NoteTests(ChatServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.seed_accounts(tokens=10.0)
        self.provider = FakeProvider(["ok"], tokens_used=100)
        self.service = self._service(self.provider)
        self.session = self.service.create_session("user-1", "char-1")

    def test_context_notes_reach_the_prompt(self) -> None:
        note = self.service.create_note("user-1", "session", self.session.id, "I am afraid of deep water.")
        self.service.create_note("user-1", "character", "char-1", "Call me captain.", category="preference")

        asyncio.run(self.service.send_message(self.session.id, "user-1", "Hello"))
        prompt = self.provider.calls[-1]["system_prompt"]
        self.assertIn("- I am afraid of deep water.", prompt)
        self.assertIn("- Call me captain.", prompt)

        self.assertFalse(self.service.toggle_include_in_context(note.id, "user-1").include_in_context)
        asyncio.run(self.service.send_message(self.session.id, "user-1", "Again"))
        self.assertNotIn("deep water", self.provider.calls[-1]["system_prompt"])

    def test_pinned_notes_list_first(self) -> None:
        first = self.service.create_note("user-1", "session", self.session.id, "first")
        self.service.create_note("user-1", "session", self.session.id, "second")

        self.assertTrue(self.service.toggle_pin(first.id, "user-1").is_pinned)

        notes = self.service.list_notes("user-1", "session", self.session.id)
        self.assertEqual("first", notes[0].content)

    def test_update_and_delete(self) -> None:
        note = self.service.create_note("user-1", "session", self.session.id, "draft")

        updated = self.service.update_note(note.id, "user-1", content=" final ", category="rule")
        self.assertEqual(("final", "rule"), (updated.content, str(updated.category)))

        self.service.delete_note(note.id, "user-1")
        with self.assertRaises(NoteNotFound):
            self.service.toggle_pin(note.id, "user-1")

    def test_notes_are_owned(self) -> None:
        note = self.service.create_note("user-1", "session", self.session.id, "mine")

        with self.assertRaises(PermissionDenied):
            self.service.update_note(note.id, "intruder", content="theirs")
        with self.assertRaises(PermissionDenied):
            self.service.delete_note(note.id, "intruder")
        with self.assertRaises(PermissionDenied):
            self.service.create_note("intruder", "session", self.session.id, "sneaky")

    def test_invalid_targets_and_content(self) -> None:
        with self.assertRaises(CharacterNotFound):
            self.service.create_note("user-1", "character", "nobody", "hello")
        with self.assertRaises(SessionNotFound):
            self.service.create_note("user-1", "session", "missing", "hello")
        with self.assertRaises(InvalidRequest):
            self.service.create_note("user-1", "session", self.session.id, "   ")
