import os
import unittest
from unittest.mock import patch

from character_chat.app_config import AppConfig, RuntimeEnv, _to_bool, parse_app_config, resolve_runtime_env
from character_chat.bootstrap import build_gate, build_router
from character_chat.logging_config import AuditLogConsumer, setup_logging
from character_chat.model_router import ProviderBinding
from character_chat.models import CreatorTier
from character_chat.providers.http_provider import HttpTextProvider
from character_chat.providers.openai_provider import OpenAIProvider


class ParseAppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        app = parse_app_config({})

        self.assertEqual("gpt4", app.default_provider)
        self.assertEqual({"gpt4", "claude3", "grok", "custom"}, set(app.providers))
        self.assertEqual(1, app.provider_max_attempts)
        self.assertEqual(20, app.compaction_batch_size)
        self.assertIsNone(app.compaction_provider)
        self.assertTrue(app.moderation_enabled)
        self.assertTrue(app.moderation_fail_open)
        self.assertEqual(2.0, app.provider_rates["custom"])
        self.assertEqual(frozenset({CreatorTier.LEVEL2, CreatorTier.LEVEL3}), app.qualifying_creator_tiers)

    def test_overrides(self) -> None:
        app = parse_app_config({
            "DefaultProvider": "local",
            "Providers": {
                "local": {"Type": "HTTP", "Model": "mythomax", "BaseUrl": "http://localhost:5001"},
                "grok": {"Model": "grok-2"},
            },
            "ProviderMaxAttempts": 3,
            "CompactionProvider": "claude3",
            "ModerationFailOpen": "false",
            "ProviderRates": {"grok": 0.8},
            "DefaultRate": 1.25,
            "QualifyingCreatorTiers": ["level3"],
        })

        self.assertEqual("local", app.default_provider)
        self.assertEqual(ProviderBinding("http", "mythomax", "http://localhost:5001", "OPENAI_API_KEY"), app.providers["local"])
        self.assertEqual("grok-2", app.providers["grok"].model)
        self.assertEqual("https://api.x.ai/v1", app.providers["grok"].base_url)
        self.assertEqual(3, app.provider_max_attempts)
        self.assertEqual("claude3", app.compaction_provider)
        self.assertFalse(app.moderation_fail_open)
        self.assertEqual(0.8, app.provider_rates["grok"])
        self.assertEqual(1.5, app.provider_rates["gpt4"])
        self.assertEqual(1.25, app.default_rate)
        self.assertEqual(frozenset({CreatorTier.LEVEL3}), app.qualifying_creator_tiers)

    def test_to_bool(self) -> None:
        self.assertTrue(_to_bool("Yes"))
        self.assertFalse(_to_bool("off", default=True))
        self.assertTrue(_to_bool(None, default=True))
        self.assertFalse(_to_bool(0))

    def test_runtime_env_reads_each_binding_key(self) -> None:
        env_vars = {"OPENAI_API_KEY": "sk-openai", "XAI_API_KEY": "xai"}
        with patch.dict(os.environ, env_vars, clear=True):
            env = resolve_runtime_env(parse_app_config({}))

        self.assertEqual("sk-openai", env.provider_api_keys["gpt4"])
        self.assertEqual("xai", env.provider_api_keys["grok"])
        self.assertEqual("", env.provider_api_keys["claude3"])
        self.assertEqual("sk-openai", env.moderation_api_key)


class BootstrapTests(unittest.TestCase):
    def test_providers_without_keys_are_skipped(self) -> None:
        app = AppConfig()
        env = RuntimeEnv(provider_api_keys={"gpt4": "sk-test"}, moderation_api_key="")

        router = build_router(app, env)

        self.assertEqual(["gpt4"], router.provider_ids)

    def test_http_provider_needs_no_key(self) -> None:
        app = AppConfig(
            default_provider="local",
            providers={"local": ProviderBinding("http", "mythomax", base_url="http://localhost:5001")},
        )

        router = build_router(app, RuntimeEnv(provider_api_keys={}, moderation_api_key=""))

        self.assertEqual(["local"], router.provider_ids)
        self.assertIsInstance(router._routes["local"].provider, HttpTextProvider)

    def test_default_provider_without_key_is_an_error(self) -> None:
        with self.assertRaises(ValueError):
            build_router(AppConfig(), RuntimeEnv(provider_api_keys={"grok": "xai"}, moderation_api_key=""))

    def test_openai_compatible_binding(self) -> None:
        router = build_router(AppConfig(), RuntimeEnv(provider_api_keys={"gpt4": "sk-test"}, moderation_api_key=""))
        self.assertIsInstance(router._routes["gpt4"].provider, OpenAIProvider)

    def test_gate_configuration(self) -> None:
        env = RuntimeEnv(provider_api_keys={}, moderation_api_key="")

        self.assertIsNone(build_gate(AppConfig(moderation_enabled=False), env))

        gate = build_gate(AppConfig(moderation_fail_open=False), env)
        self.assertIsNone(gate._classifier)
        self.assertFalse(gate._fail_open)


class SetupLoggingTests(unittest.TestCase):
    def tearDown(self) -> None:
        setup_logging(consumers=[])

    def test_unknown_consumers_are_skipped(self) -> None:
        descriptions = setup_logging(level="DEBUG", consumers=[{"type": "console"}, {"type": "carrier-pigeon"}])
        self.assertEqual(["console (stderr, WARNING)"], descriptions)

    def test_explicit_level_wins(self) -> None:
        descriptions = setup_logging(consumers=[{"type": "console", "level": "DEBUG"}])
        self.assertEqual(["console (stderr, DEBUG)"], descriptions)

    def test_audit_consumer_only_accepts_audit_modules(self) -> None:
        self.assertTrue(AuditLogConsumer.accepts({"name": "character_chat.moderation.gate"}))
        self.assertTrue(AuditLogConsumer.accepts({"name": "character_chat.metering"}))
        self.assertFalse(AuditLogConsumer.accepts({"name": "character_chat.model_router"}))
        self.assertFalse(AuditLogConsumer.accepts({"name": None}))
