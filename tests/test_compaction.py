import asyncio
import json
import unittest

from character_chat.compaction import MemoryCompactor, parse_summary
from character_chat.models import ChatSession, MemorySummary, Message, MessageRange, Sender
from tests.fakes import FakeProvider, make_router
from tests.storage.base import ChatStoreTestCase

SUMMARY_REPLY = json.dumps(
    {
        "summary": "Mira and the user charted a course for the northern isles.",
        "key_events": ["Course set north", "Storm warning"],
        "emotional_tone": "hopeful",
        "important_facts": ["The user fears deep water"],
    }
)


class ParseSummaryTests(unittest.TestCase):
    def test_reads_json_fields(self) -> None:
        summary = parse_summary("s", 1, MessageRange(0, 20), SUMMARY_REPLY)

        self.assertEqual("Mira and the user charted a course for the northern isles.", summary.summary_text)
        self.assertEqual(("Course set north", "Storm warning"), summary.key_events)
        self.assertEqual("hopeful", summary.emotional_tone)
        self.assertEqual(("The user fears deep water",), summary.important_facts)

    def test_accepts_fenced_json(self) -> None:
        summary = parse_summary("s", 1, MessageRange(0, 20), f"```json\n{SUMMARY_REPLY}\n```")
        self.assertEqual("hopeful", summary.emotional_tone)

    def test_falls_back_to_raw_text(self) -> None:
        summary = parse_summary("s", 2, MessageRange(20, 40), "  They sailed north and argued about maps.  ")

        self.assertEqual("They sailed north and argued about maps.", summary.summary_text)
        self.assertEqual((), summary.key_events)
        self.assertEqual(2, summary.batch_index)
        self.assertEqual(MessageRange(20, 40), summary.message_range)


class MemoryCompactorTests(ChatStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.seed_accounts()
        self._sessions.create(ChatSession(id="s-1", user_id="user-1", character_id="char-1", provider_id="gpt4"))
        self.provider = FakeProvider([SUMMARY_REPLY], tokens_used=50)
        self.compactor = MemoryCompactor(
            self._sessions, self._summaries, make_router(self.provider), batch_size=20, events=self._events,
        )

    def _add_messages(self, count: int) -> None:
        self._sessions.append_messages(
            "s-1",
            [
                Message(Sender.USER if i % 2 == 0 else Sender.AI, f"message {i}", "2026-01-01T00:00:00.000+00:00")
                for i in range(count)
            ],
        )

    def test_no_complete_batch_does_nothing(self) -> None:
        self._add_messages(19)

        self.assertEqual([], asyncio.run(self.compactor.compact("s-1")))
        self.assertEqual([], self.provider.calls)
        self.assertEqual(0, self._sessions.compaction_marker("s-1"))

    def test_summarizes_only_missing_batches(self) -> None:
        self._add_messages(45)
        self._sessions.advance_compaction_marker("s-1", 1)

        created = asyncio.run(self.compactor.compact("s-1"))

        self.assertEqual(1, len(created))
        self.assertEqual(2, created[0].batch_index)
        self.assertEqual(MessageRange(20, 40), created[0].message_range)
        self.assertEqual(2, self._sessions.compaction_marker("s-1"))
        self.assertEqual(1, len(self.provider.calls))
        prompt = self.provider.calls[0]["messages"][0]["content"]
        self.assertTrue(prompt.startswith("[User]: message 20"))
        self.assertIn("[Character]: message 39", prompt)
        self.assertNotIn("message 40", prompt)

        events = self._events.list_events("s-1", event_type="compaction.completed")
        self.assertEqual([{"batch_index": 2, "start": 20, "end": 40}], [e["payload"] for e in events])

    def test_existing_summary_is_kept_and_marker_advances(self) -> None:
        self._add_messages(40)
        self._summaries.save(MemorySummary("s-1", 1, MessageRange(0, 20), "already there"))

        created = asyncio.run(self.compactor.compact("s-1"))

        self.assertEqual([2], [s.batch_index for s in created])
        self.assertEqual(1, len(self.provider.calls))
        self.assertEqual(2, self._sessions.compaction_marker("s-1"))
        self.assertEqual("already there", self._summaries.list_all("s-1")[0].summary_text)

    def test_failure_keeps_marker_and_later_run_retries(self) -> None:
        self._add_messages(20)
        self.provider.error = RuntimeError("model down")

        self.assertEqual([], asyncio.run(self.compactor.compact("s-1")))
        self.assertEqual(0, self._sessions.compaction_marker("s-1"))
        self.assertEqual([], self._summaries.list_all("s-1"))

        self.provider.error = None
        created = asyncio.run(self.compactor.compact("s-1"))

        self.assertEqual([1], [s.batch_index for s in created])
        self.assertEqual(1, self._sessions.compaction_marker("s-1"))

    def test_failure_stops_at_first_failed_batch(self) -> None:
        self._add_messages(40)
        self._summaries.save(MemorySummary("s-1", 1, MessageRange(0, 20), "first"))
        self.provider.error = RuntimeError("model down")

        asyncio.run(self.compactor.compact("s-1"))

        self.assertEqual(1, self._sessions.compaction_marker("s-1"))

    def test_concurrent_runs_produce_one_summary_per_batch(self) -> None:
        self._add_messages(20)
        self.provider.delay = 0.01

        async def run():
            return await asyncio.gather(self.compactor.compact("s-1"), self.compactor.compact("s-1"))

        first, second = asyncio.run(run())

        self.assertEqual(1, len(first) + len(second))
        self.assertEqual(1, len(self.provider.calls))
        self.assertEqual(1, len(self._summaries.list_all("s-1")))
        self.assertEqual(0, len(self.compactor._locks))

    def test_configured_provider_overrides_session_provider(self) -> None:
        self._add_messages(20)
        compactor = MemoryCompactor(
            self._sessions, self._summaries, make_router(self.provider), provider_id="claude3",
        )

        asyncio.run(compactor.compact("s-1", provider_id="grok"))

        self.assertEqual("fake-claude", self.provider.calls[0]["model"])

    def test_rejects_non_positive_batch_size(self) -> None:
        with self.assertRaises(ValueError):
            MemoryCompactor(self._sessions, self._summaries, make_router(self.provider), batch_size=0)
