from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from character_chat.app_config import AppConfig, RuntimeEnv
from character_chat.chat_service import ChatService
from character_chat.compaction import MemoryCompactor
from character_chat.logging_config import setup_logging
from character_chat.metering import MeteringPolicy, TokenLedger
from character_chat.model_router import ModelRouter, Route
from character_chat.moderation import ModerationGate, OpenAIModerationClassifier
from character_chat.provider import create_provider
from character_chat.storage import AccountRepository, ChatStore, EventEmitter, SessionRepository, SummaryRepository
from character_chat.turn_engine import TurnEngine


@dataclass
class AppRuntime:
    service: ChatService
    store: ChatStore
    router: ModelRouter
    log_descriptions: list[str]


def build_router(app: AppConfig, env: RuntimeEnv) -> ModelRouter:
    routes: dict[str, Route] = {}
    for provider_id, binding in app.providers.items():
        api_key = env.provider_api_keys.get(provider_id, "")
        if not api_key and binding.provider_type != "http":
            logger.warning(f"Provider {provider_id} disabled: {binding.api_key_env} is not set")
            continue
        routes[provider_id] = Route(
            provider=create_provider(
                binding.provider_type,
                api_key,
                base_url=binding.base_url,
                timeout_seconds=app.request_timeout_seconds,
            ),
            model=binding.model,
        )
    return ModelRouter(
        routes,
        default_provider_id=app.default_provider,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
        timeout_seconds=app.request_timeout_seconds,
        max_attempts=app.provider_max_attempts,
    )


def build_gate(app: AppConfig, env: RuntimeEnv) -> ModerationGate | None:
    if not app.moderation_enabled:
        logger.warning("Moderation disabled by configuration (ModerationEnabled=false)")
        return None
    classifier = None
    if env.moderation_api_key:
        classifier = OpenAIModerationClassifier(env.moderation_api_key, model=app.moderation_model)
    else:
        logger.warning("OPENAI_API_KEY is not set; moderation runs without the external classifier")
    return ModerationGate(classifier, fail_open=app.moderation_fail_open)


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    db_path = Path(app.db_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    store = ChatStore(str(db_path))

    router = build_router(app, env)
    policy = MeteringPolicy(
        rates=app.provider_rates,
        default_rate=app.default_rate,
        creator_share=app.creator_share,
        qualifying_tiers=app.qualifying_creator_tiers,
    )
    engine = TurnEngine(
        router=router,
        gate=build_gate(app, env),
        policy=policy,
        recent_messages_limit=app.recent_messages_limit,
        memory_summary_limit=app.memory_summary_limit,
    )
    compactor = MemoryCompactor(
        SessionRepository(store),
        SummaryRepository(store),
        router,
        batch_size=app.compaction_batch_size,
        provider_id=app.compaction_provider,
        events=EventEmitter(store),
    )
    service = ChatService(
        store,
        engine,
        ledger=TokenLedger(AccountRepository(store), policy),
        compactor=compactor,
        memory_summary_limit=app.memory_summary_limit,
    )
    return AppRuntime(service=service, store=store, router=router, log_descriptions=log_descriptions)
