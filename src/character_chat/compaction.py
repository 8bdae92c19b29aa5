import json
import re

from loguru import logger

from character_chat.errors import ChatError, CompactionFailure
from character_chat.keyed_lock import KeyedLock
from character_chat.model_router import ModelRouter
from character_chat.models import MemorySummary, Message, MessageRange, Sender
from character_chat.storage.events import EventEmitter, utc_now
from character_chat.storage.sessions import SessionRepository
from character_chat.storage.summaries import SummaryRepository

DEFAULT_BATCH_SIZE = 20

_SUMMARIZE_PROMPT = """\
You maintain the long-term memory of an ongoing role-play conversation between a \
user and an AI character. Summarize the conversation excerpt you are given.

Preserve precisely:
- What happened, in order
- Promises, decisions and relationship changes between the characters
- Names, places and facts the character must remember later

Respond with a single JSON object and nothing else:
{"summary": "...", "key_events": ["..."], "emotional_tone": "...", "important_facts": ["..."]}"""

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


def _format_for_summarization(messages: tuple[Message, ...]) -> str:
    parts = []
    for msg in messages:
        speaker = "User" if msg.sender == Sender.USER else "Character"
        parts.append(f"[{speaker}]: {msg.content}")
    return "\n\n".join(parts)


def _str_list(value) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item).strip() for item in value if str(item).strip())


def parse_summary(session_id: str, batch_index: int, message_range: MessageRange, text: str) -> MemorySummary:
    """Build a summary from the model reply, falling back to the raw text."""
    cleaned = _FENCE.sub("", text.strip())
    data = None
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            data = None

    if not isinstance(data, dict) or not str(data.get("summary", "")).strip():
        return MemorySummary(
            session_id=session_id,
            batch_index=batch_index,
            message_range=message_range,
            summary_text=text.strip(),
            created_at=utc_now(),
        )
    return MemorySummary(
        session_id=session_id,
        batch_index=batch_index,
        message_range=message_range,
        summary_text=str(data["summary"]).strip(),
        key_events=_str_list(data.get("key_events")),
        emotional_tone=str(data.get("emotional_tone", "")).strip(),
        important_facts=_str_list(data.get("important_facts")),
        created_at=utc_now(),
    )


class MemoryCompactor:
    """Summarizes complete message batches into durable memory summaries.

    Batch ``b`` (1-based) covers messages ``[(b-1)*size, b*size)``. The
    session's ``compacted_batches`` marker records how many leading batches
    are summarized; the expected count is always recomputed from the live
    message count, so a failed batch is picked up again on a later turn.
    """

    def __init__(
        self,
        sessions: SessionRepository,
        summaries: SummaryRepository,
        router: ModelRouter,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        provider_id: str | None = None,
        events: EventEmitter | None = None,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._sessions = sessions
        self._summaries = summaries
        self._router = router
        self._batch_size = batch_size
        self._provider_id = provider_id
        self._events = events
        self._locks = KeyedLock()

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def compact(self, session_id: str, provider_id: str | None = None) -> list[MemorySummary]:
        """Summarize every missing complete batch; returns the summaries created."""
        async with self._locks.hold(session_id):
            expected = self._sessions.message_count(session_id) // self._batch_size
            marker = self._sessions.compaction_marker(session_id)
            if expected <= marker:
                return []

            logger.info(f"Compaction: session={session_id}, batches {marker + 1}..{expected}")
            created: list[MemorySummary] = []
            for batch_index in range(marker + 1, expected + 1):
                try:
                    summary = await self._compact_batch(session_id, batch_index, provider_id)
                except CompactionFailure as ex:
                    logger.error(f"CompactionFailure: {ex.reason}")
                    break
                if summary is not None:
                    created.append(summary)
            return created

    async def _compact_batch(self, session_id: str, batch_index: int, provider_id: str | None) -> MemorySummary | None:
        message_range = MessageRange(
            start=(batch_index - 1) * self._batch_size,
            end=batch_index * self._batch_size,
        )
        try:
            if self._summaries.exists(session_id, batch_index):
                logger.debug(f"Compaction: session={session_id}, batch {batch_index} already summarized")
                self._sessions.advance_compaction_marker(session_id, batch_index)
                return None

            messages = self._sessions.load_messages(session_id, message_range.start, message_range.end)
            if len(messages) < self._batch_size:
                raise CompactionFailure(session_id, batch_index, f"only {len(messages)} messages in range")

            generation = await self._router.generate(
                self._provider_id or provider_id,
                _SUMMARIZE_PROMPT,
                [{"role": "user", "content": _format_for_summarization(messages)}],
            )
            summary = parse_summary(session_id, batch_index, message_range, generation.content)
            saved = self._summaries.save(summary)
            if saved:
                logger.info(
                    f"Compaction: session={session_id}, batch {batch_index} "
                    f"[{message_range.start}, {message_range.end}) summarized"
                )
                if self._events is not None:
                    self._events.emit(
                        session_id,
                        "compaction.completed",
                        {"batch_index": batch_index, "start": message_range.start, "end": message_range.end},
                    )
            self._sessions.advance_compaction_marker(session_id, batch_index)
            return summary if saved else None
        except CompactionFailure:
            raise
        except ChatError as ex:
            raise CompactionFailure(session_id, batch_index, ex.reason) from ex
        except Exception as ex:
            raise CompactionFailure(session_id, batch_index, f"{type(ex).__name__}: {ex}") from ex
