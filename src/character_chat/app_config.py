from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from character_chat.metering import (
    DEFAULT_CREATOR_SHARE,
    DEFAULT_QUALIFYING_TIERS,
    DEFAULT_RATE,
    DEFAULT_RATES,
)
from character_chat.model_router import DEFAULT_BINDINGS, DEFAULT_PROVIDER_ID, ProviderBinding
from character_chat.models import CreatorTier


@dataclass
class RuntimeEnv:
    # provider id -> API key (empty when the variable is unset)
    provider_api_keys: dict[str, str]
    moderation_api_key: str


@dataclass
class AppConfig:
    default_provider: str = DEFAULT_PROVIDER_ID
    providers: dict[str, ProviderBinding] = field(default_factory=lambda: dict(DEFAULT_BINDINGS))
    max_tokens: int = 1024
    temperature: float = 0.8
    request_timeout_seconds: float = 60.0
    provider_max_attempts: int = 1
    recent_messages_limit: int = 10
    memory_summary_limit: int = 3
    compaction_batch_size: int = 20
    compaction_provider: str | None = None
    moderation_enabled: bool = True
    moderation_fail_open: bool = True
    moderation_model: str = "omni-moderation-latest"
    provider_rates: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RATES))
    default_rate: float = DEFAULT_RATE
    creator_share: float = DEFAULT_CREATOR_SHARE
    qualifying_creator_tiers: frozenset[CreatorTier] = DEFAULT_QUALIFYING_TIERS
    db_path: str = ".character_chat/chat.db"
    log_level: str = "INFO"
    log_consumers: list | None = None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _parse_providers(raw: dict | None) -> dict[str, ProviderBinding]:
    providers = dict(DEFAULT_BINDINGS)
    for provider_id, entry in (raw or {}).items():
        base = providers.get(provider_id)
        providers[provider_id] = ProviderBinding(
            provider_type=str(entry.get("Type", base.provider_type if base else "openai")).strip().lower(),
            model=str(entry.get("Model", base.model if base else "")),
            base_url=entry.get("BaseUrl", base.base_url if base else None) or None,
            api_key_env=str(entry.get("ApiKeyEnv", base.api_key_env if base else "OPENAI_API_KEY")),
        )
    return providers


def parse_app_config(config: dict) -> AppConfig:
    rates = dict(DEFAULT_RATES)
    rates.update({k: float(v) for k, v in config.get("ProviderRates", {}).items()})
    compaction_provider = str(config.get("CompactionProvider", "")).strip() or None
    tiers = config.get("QualifyingCreatorTiers")

    return AppConfig(
        default_provider=str(config.get("DefaultProvider", DEFAULT_PROVIDER_ID)).strip(),
        providers=_parse_providers(config.get("Providers")),
        max_tokens=int(config.get("MaxTokens", 1024)),
        temperature=float(config.get("Temperature", 0.8)),
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", 60)),
        provider_max_attempts=int(config.get("ProviderMaxAttempts", 1)),
        recent_messages_limit=int(config.get("RecentMessagesLimit", 10)),
        memory_summary_limit=int(config.get("MemorySummaryLimit", 3)),
        compaction_batch_size=int(config.get("CompactionBatchSize", 20)),
        compaction_provider=compaction_provider,
        moderation_enabled=_to_bool(config.get("ModerationEnabled", True), default=True),
        moderation_fail_open=_to_bool(config.get("ModerationFailOpen", True), default=True),
        moderation_model=str(config.get("ModerationModel", "omni-moderation-latest")),
        provider_rates=rates,
        default_rate=float(config.get("DefaultRate", DEFAULT_RATE)),
        creator_share=float(config.get("CreatorShare", DEFAULT_CREATOR_SHARE)),
        qualifying_creator_tiers=(
            frozenset(CreatorTier(t) for t in tiers) if tiers is not None else DEFAULT_QUALIFYING_TIERS
        ),
        db_path=str(config.get("DbPath", ".character_chat/chat.db")),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(app: AppConfig) -> RuntimeEnv:
    return RuntimeEnv(
        provider_api_keys={
            provider_id: os.environ.get(binding.api_key_env, "")
            for provider_id, binding in app.providers.items()
        },
        moderation_api_key=os.environ.get("OPENAI_API_KEY", ""),
    )
