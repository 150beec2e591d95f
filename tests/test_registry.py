import asyncio
import unittest

from llm_switchboard.errors import ConfigurationError, NotConfiguredError
from llm_switchboard.providers import OpenAIProvider
from llm_switchboard.registry import ProviderMetrics, ProviderRegistry, register_builtin_providers
from llm_switchboard.types import HealthResult, Usage

from tests.fakes import KEYS, FakeBackend


class ProviderRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.backend = FakeBackend()
        self.registry = register_builtin_providers(
            ProviderRegistry(transport=self.backend.transport())
        )

    async def asyncTearDown(self) -> None:
        await self.registry.aclose()

    def configure(self, provider_id: str, **extra) -> dict:
        return self.registry.configure_provider(
            provider_id, {"api_key": KEYS[provider_id], "retry_delay_s": 0, **extra}
        )

    async def test_builtin_providers_registered_in_order(self) -> None:
        ids = [p["provider_id"] for p in self.registry.list_providers()]
        self.assertEqual(ids, ["openai", "anthropic", "gemini", "deepseek", "lmstudio"])
        self.assertFalse(any(p["configured"] for p in self.registry.list_providers()))

    async def test_capability_queries(self) -> None:
        self.assertEqual(
            self.registry.find_providers_by_capability(["vision"]),
            ["openai", "anthropic", "gemini", "lmstudio"],
        )
        self.assertEqual(
            self.registry.find_providers_by_capability(["reasoning"]),
            ["anthropic", "gemini", "deepseek"],
        )
        self.assertEqual(
            self.registry.find_providers_by_capability(["vision"], min_context_length=500000),
            ["gemini"],
        )
        self.assertEqual(self.registry.find_providers_by_capability(["telepathy"]), [])

    async def test_configure_then_create_instance(self) -> None:
        sanitized = self.configure("openai")
        self.assertEqual(sanitized["api_key"], "***")
        self.assertFalse(self.registry.is_configured("openai"))

        instance = await self.registry.create_provider_instance("openai")
        self.assertIsInstance(instance, OpenAIProvider)
        self.assertTrue(self.registry.is_configured("openai"))
        self.assertEqual([m.id for m in instance.models], ["gpt-4o", "gpt-4o-mini"])
        self.assertIs(await self.registry.create_provider_instance("openai"), instance)

    async def test_reconfigure_swaps_instance_and_retires_old(self) -> None:
        self.configure("openai")
        first = await self.registry.create_provider_instance("openai")

        self.registry.configure_provider("openai", {"default_model": "gpt-4o"})
        # the stale instance stays published until the replacement is ready
        self.assertTrue(self.registry.is_configured("openai"))
        second = await self.registry.create_provider_instance("openai")

        self.assertIsNot(first, second)
        self.assertEqual(first.config.default_model, "gpt-4o-mini")
        self.assertEqual(second.config.default_model, "gpt-4o")
        self.assertEqual(second.config.api_key, KEYS["openai"])
        self.assertTrue(first._client.is_closed)
        self.assertFalse(second._client.is_closed)

    async def test_concurrent_builds_share_one_instance(self) -> None:
        self.configure("anthropic")
        first, second = await asyncio.gather(
            self.registry.create_provider_instance("anthropic"),
            self.registry.create_provider_instance("anthropic"),
        )
        self.assertIs(first, second)
        self.assertEqual(len(self.backend.requests), 1)

    async def test_invalid_configuration_is_not_stored(self) -> None:
        self.configure("openai")
        with self.assertRaises(ConfigurationError):
            self.registry.configure_provider("openai", {"timeout_s": 0})
        with self.assertRaises(ConfigurationError):
            self.registry.configure_provider("openai", {"colour": "blue"})
        self.assertNotIn("timeout_s", self.registry.export_config()["openai"])

    async def test_failed_rebuild_removes_stale_instance(self) -> None:
        self.configure("openai")
        await self.registry.create_provider_instance("openai")

        self.registry.configure_provider("openai", {"api_key": "not-an-openai-key"})
        with self.assertRaises(ConfigurationError):
            await self.registry.create_provider_instance("openai")
        self.assertFalse(self.registry.is_configured("openai"))
        self.assertIsNone(await self.registry.get_provider("openai"))

    async def test_unconfigured_provider_is_never_built(self) -> None:
        self.assertIsNone(await self.registry.get_provider("lmstudio"))
        self.assertIsNone(await self.registry.get_provider("nope"))
        self.assertEqual(self.backend.requests, [])
        with self.assertRaises(ConfigurationError):
            await self.registry.create_provider_instance("nope")

    async def test_local_provider_configured_without_credential(self) -> None:
        self.registry.configure_provider("lmstudio", {"retry_delay_s": 0})
        instance = await self.registry.get_provider("lmstudio")

        self.assertIsNotNone(instance)
        self.assertTrue(self.registry.is_configured("lmstudio"))

    async def test_reregistration_only_updates_metadata(self) -> None:
        self.configure("openai")
        instance = await self.registry.create_provider_instance("openai")

        self.registry.register_provider("openai", object, metadata={"display_name": "OpenAI (work)"})

        listing = {p["provider_id"]: p for p in self.registry.list_providers()}
        self.assertEqual(listing["openai"]["display_name"], "OpenAI (work)")
        self.assertIs(await self.registry.create_provider_instance("openai"), instance)

    async def test_export_masks_and_import_keeps_credentials(self) -> None:
        self.configure("openai", default_model="gpt-4o")
        exported = self.registry.export_config()
        self.assertEqual(exported["openai"]["api_key"], "***")

        other = register_builtin_providers(ProviderRegistry(transport=self.backend.transport()))
        other.configure_provider("openai", {"api_key": KEYS["openai"]})
        imported = other.import_config({**exported, "unknown": {"api_key": "x"}})

        self.assertEqual(imported, ["openai"])
        instance = await other.create_provider_instance("openai")
        self.assertEqual(instance.config.api_key, KEYS["openai"])
        self.assertEqual(instance.config.default_model, "gpt-4o")
        await other.aclose()

    async def test_health_tracking(self) -> None:
        self.assertTrue(self.registry.is_healthy("gemini"))
        self.assertIsNone(self.registry.health("gemini"))

        self.registry.update_health("gemini", HealthResult(provider="gemini", ok=False, error="down"))
        self.registry.update_health("gemini", HealthResult(provider="gemini", ok=False, error="down"))
        self.assertFalse(self.registry.is_healthy("gemini"))
        self.assertEqual(self.registry.health("gemini").consecutive_failures, 2)

        self.configure("gemini")
        result = await self.registry.check_health("gemini")
        self.assertTrue(result.ok)
        self.assertEqual(result.model_count, 1)
        self.assertTrue(self.registry.is_healthy("gemini"))

    async def test_refresh_models_requires_configuration(self) -> None:
        with self.assertRaises(NotConfiguredError):
            await self.registry.refresh_models("deepseek")

        self.configure("deepseek")
        models = await self.registry.refresh_models("deepseek")
        self.assertEqual([m.id for m in models], ["deepseek-chat", "deepseek-reasoner"])

    async def test_unregister_retires_instance(self) -> None:
        self.configure("openai")
        instance = await self.registry.create_provider_instance("openai")

        await self.registry.unregister_provider("openai")

        self.assertFalse(self.registry.is_registered("openai"))
        self.assertTrue(instance._client.is_closed)


class ProviderMetricsTests(unittest.TestCase):
    def test_rolling_window(self) -> None:
        metrics = ProviderMetrics(window=2)
        metrics.record(True, 1.0, Usage(prompt_tokens=3, completion_tokens=2), 0.5)
        metrics.record(False, 3.0)
        metrics.record(True, 5.0)

        self.assertEqual(metrics.request_count, 3)
        self.assertEqual(metrics.failure_count, 1)
        self.assertEqual(metrics.total_tokens, 5)
        self.assertAlmostEqual(metrics.total_cost, 0.5)
        self.assertAlmostEqual(metrics.avg_latency_s, 4.0)
        self.assertAlmostEqual(metrics.success_rate, 0.5)

    def test_empty_window(self) -> None:
        metrics = ProviderMetrics()
        self.assertEqual(metrics.success_rate, 1.0)
        self.assertEqual(metrics.avg_latency_s, 0.0)


if __name__ == "__main__":
    unittest.main()
