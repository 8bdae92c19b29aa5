from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from loguru import logger

from character_chat.context_builder import (
    DEFAULT_MEMORY_SUMMARY_LIMIT,
    DEFAULT_RECENT_MESSAGES_LIMIT,
    ContextInputs,
    LLMContext,
    build_context,
    parse_suggestions,
)
from character_chat.effects import (
    AppendMessages,
    CreditCreatorEarnings,
    DebitTokens,
    Effect,
    EmitEvent,
    RecordTurn,
)
from character_chat.errors import ContentRejected
from character_chat.metering import MeteringPolicy, ensure_can_afford, period_key
from character_chat.model_router import ModelRouter
from character_chat.models import (
    Character,
    ChatSession,
    MemorySummary,
    Message,
    PersonaPreset,
    Sender,
    User,
    UserNote,
    World,
)
from character_chat.moderation.gate import ModerationGate
from character_chat.storage.events import utc_now


@dataclass(frozen=True)
class TurnRequest:
    """Everything one turn reads, loaded before the turn starts."""

    session: ChatSession
    user: User
    text: str
    character: Character
    world: World | None = None
    preset: PersonaPreset | None = None
    summaries: Sequence[MemorySummary] = ()
    notes: Sequence[UserNote] = ()
    creator: User | None = None


@dataclass(frozen=True)
class TurnOutcome:
    session: ChatSession
    reply: Message
    tokens_used: int
    token_cost: float
    estimated: bool = False
    suggestions: list[str] = field(default_factory=list)
    effects: tuple[Effect, ...] = ()


class TurnEngine:
    """Runs one conversational turn without touching storage.

    The engine returns the new session value together with the effect
    commands (debit, earnings credit, message append, session save, audit
    event) that the caller applies atomically.
    """

    def __init__(
        self,
        *,
        router: ModelRouter,
        gate: ModerationGate | None = None,
        policy: MeteringPolicy | None = None,
        recent_messages_limit: int = DEFAULT_RECENT_MESSAGES_LIMIT,
        memory_summary_limit: int = DEFAULT_MEMORY_SUMMARY_LIMIT,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        self._router = router
        self._gate = gate
        self._policy = policy or MeteringPolicy()
        self._recent_messages_limit = recent_messages_limit
        self._memory_summary_limit = memory_summary_limit
        self._clock = clock

    @property
    def router(self) -> ModelRouter:
        return self._router

    @property
    def policy(self) -> MeteringPolicy:
        return self._policy

    async def moderate(self, text: str, request: TurnRequest, *, stage: str) -> None:
        if self._gate is None:
            return
        result = await self._gate.evaluate(text, request.user.trust_tier)
        if result.blocked:
            raise ContentRejected(result.reason or "This message cannot be sent.", category=result.category, stage=stage)

    async def prepare(self, request: TurnRequest) -> LLMContext:
        """Input moderation and balance check, then context assembly.

        Both checks happen before any provider call, so a rejected turn costs
        nothing.
        """
        await self.moderate(request.text, request, stage="input")
        ensure_can_afford(request.user)

        context = build_context(
            ContextInputs(
                character=request.character,
                user_message=request.text,
                mode=request.session.mode,
                world=request.world,
                preset=request.preset,
                session_state=request.session.state,
                summaries=request.summaries,
                notes=request.notes,
                recent_messages=request.session.messages,
                recent_messages_limit=self._recent_messages_limit,
                memory_summary_limit=self._memory_summary_limit,
            )
        )
        logger.debug(
            f"Context built: session={request.session.id}, prompt_chars={len(context.system_prompt)}, "
            f"messages={len(context.messages)}, suggestions={context.include_suggestions}"
        )
        return context

    async def run(self, request: TurnRequest) -> TurnOutcome:
        context = await self.prepare(request)
        started_at = self._clock()
        generation = await self._router.generate(
            request.session.provider_id, context.system_prompt, context.messages
        )
        return await self.finish(
            request,
            context,
            generation.content,
            generation.tokens_used,
            estimated=generation.estimated,
            started_at=started_at,
        )

    async def finish(
        self,
        request: TurnRequest,
        context: LLMContext,
        content: str,
        tokens_used: int,
        *,
        estimated: bool = False,
        started_at: str | None = None,
    ) -> TurnOutcome:
        """Output moderation, suggestion parsing, metering and the new session value."""
        await self.moderate(content, request, stage="output")

        reply_text, suggestions = parse_suggestions(content, context.include_suggestions)
        session = request.session
        provider_id = self._router.resolve(session.provider_id)
        cost = self._policy.cost(provider_id, tokens_used, len(reply_text))

        last_timestamp = session.messages[-1].timestamp if session.messages else ""
        user_timestamp = max(started_at or self._clock(), last_timestamp)
        reply_timestamp = max(self._clock(), user_timestamp)
        user_message = Message(sender=Sender.USER, content=request.text, timestamp=user_timestamp)
        reply = Message(
            sender=Sender.AI,
            content=reply_text,
            timestamp=reply_timestamp,
            tokens_used=tokens_used,
            suggested_replies=tuple(suggestions),
        )
        new_session = session.with_changes(
            messages=session.messages + (user_message, reply),
            total_tokens_used=session.total_tokens_used + tokens_used,
            last_activity=reply_timestamp,
        )

        effects: list[Effect] = [DebitTokens(request.user.id, cost)]
        if self._policy.qualifies(request.creator):
            effects.append(
                CreditCreatorEarnings(request.creator.id, request.character.id, cost, period_key())
            )
        effects.extend([
            AppendMessages(session.id, (user_message, reply)),
            RecordTurn(session.id, tokens_used, reply_timestamp),
            EmitEvent(
                session.id,
                "turn.completed",
                {
                    "provider_id": provider_id,
                    "tokens_used": tokens_used,
                    "estimated": estimated,
                    "token_cost": cost,
                },
            ),
        ])

        logger.info(
            f"Turn completed: session={session.id}, provider={provider_id}, tokens={tokens_used}"
            f"{' (estimated)' if estimated else ''}, cost={cost}"
        )
        return TurnOutcome(
            session=new_session,
            reply=reply,
            tokens_used=tokens_used,
            token_cost=cost,
            estimated=estimated,
            suggestions=suggestions,
            effects=tuple(effects),
        )
