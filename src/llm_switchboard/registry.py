"""Provider registry: registration, configuration and live instances."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from llm_switchboard.config import SENSITIVE_FIELDS, ProviderConfig, build_config
from llm_switchboard.errors import ConfigurationError, NotConfiguredError
from llm_switchboard.providers import BUILTIN_PROVIDERS
from llm_switchboard.providers.base import BaseProvider, ProviderCapabilities
from llm_switchboard.types import HealthResult, ModelInfo, Usage

ProviderFactory = Callable[..., BaseProvider]

_MASK = "***"


@dataclass
class ProviderHealth:
    healthy: bool = True
    last_check: datetime | None = None
    latency_s: float = 0.0
    error: str | None = None
    consecutive_failures: int = 0


@dataclass
class ProviderMetrics:
    """Cumulative counters plus a rolling window of recent outcomes."""

    window: int = 50
    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    _recent: deque[tuple[bool, float]] = field(default_factory=deque, repr=False)

    def record(
        self, ok: bool, latency_s: float, usage: Usage | None = None, cost: float = 0.0
    ) -> None:
        self.request_count += 1
        if ok:
            self.success_count += 1
        else:
            self.failure_count += 1
        if usage is not None:
            self.total_tokens += usage.total_tokens
        self.total_cost += cost
        self._recent.append((ok, latency_s))
        while len(self._recent) > self.window:
            self._recent.popleft()

    @property
    def avg_latency_s(self) -> float:
        if not self._recent:
            return 0.0
        return sum(latency for _, latency in self._recent) / len(self._recent)

    @property
    def success_rate(self) -> float:
        if not self._recent:
            return 1.0
        return sum(1 for ok, _ in self._recent if ok) / len(self._recent)


@dataclass
class _Registration:
    provider_id: str
    factory: ProviderFactory
    default_config: dict[str, Any]
    metadata: dict[str, Any]

    @property
    def capabilities(self) -> ProviderCapabilities:
        caps = self.metadata.get("capabilities")
        if isinstance(caps, ProviderCapabilities):
            return caps
        return getattr(self.factory, "capabilities", ProviderCapabilities())


class ProviderRegistry:
    """Holds provider types, their user configuration and live instances.

    Instances are never mutated after they are published: ``configure_provider``
    only marks the current instance stale, and the next ``create_provider_instance``
    builds a replacement and swaps it in with a single assignment. The replaced
    instance is retired and closes once its in-flight calls finish.
    """

    _logger = logging.getLogger(__name__)

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self._registrations: dict[str, _Registration] = {}
        self._user_config: dict[str, dict[str, Any]] = {}
        self._instances: dict[str, BaseProvider] = {}
        self._stale: set[str] = set()
        self._generation: dict[str, int] = {}
        self._pending: dict[str, asyncio.Future[BaseProvider]] = {}
        self._health: dict[str, ProviderHealth] = {}
        self._metrics: dict[str, ProviderMetrics] = {}

    # ----------------------------------------------------------- registration

    def register_provider(
        self,
        provider_id: str,
        factory: ProviderFactory,
        default_config: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Register a provider type. Re-registering only refreshes metadata."""
        existing = self._registrations.get(provider_id)
        if existing is not None:
            existing.metadata.update(metadata or {})
            self._logger.debug("Updated metadata for provider %s", provider_id)
            return

        if default_config is None:
            default_config = getattr(factory, "default_config", {})
        self._registrations[provider_id] = _Registration(
            provider_id=provider_id,
            factory=factory,
            default_config=dict(default_config),
            metadata=dict(metadata or {}),
        )
        self._generation[provider_id] = 0
        self._logger.info("Registered provider %s", provider_id)

    async def unregister_provider(self, provider_id: str) -> None:
        self._registrations.pop(provider_id, None)
        self._user_config.pop(provider_id, None)
        self._stale.discard(provider_id)
        instance = self._instances.pop(provider_id, None)
        if instance is not None:
            await instance.retire()

    def is_registered(self, provider_id: str) -> bool:
        return provider_id in self._registrations

    def capabilities(self, provider_id: str) -> ProviderCapabilities:
        instance = self._instances.get(provider_id)
        if instance is not None:
            return instance.capabilities
        return self._registration(provider_id).capabilities

    # ---------------------------------------------------------- configuration

    def configure_provider(self, provider_id: str, partial: Mapping[str, Any]) -> dict[str, Any]:
        """Merge ``partial`` into the stored user config and mark the instance stale.

        The merged result is validated before it is stored, so an invalid
        update leaves both the stored config and the live instance untouched.
        Returns the merged config with credentials masked.
        """
        registration = self._registration(provider_id)
        merged = {**self._user_config.get(provider_id, {}), **partial}
        config = self._effective_config(registration, merged)

        self._user_config[provider_id] = merged
        self._stale.add(provider_id)
        self._generation[provider_id] += 1
        self._logger.info("Configured provider %s: %s", provider_id, config.sanitized())
        return config.sanitized()

    def export_config(self) -> dict[str, dict[str, Any]]:
        """Return stored user configuration with credentials masked."""
        exported = {}
        for provider_id, values in self._user_config.items():
            exported[provider_id] = {
                key: (_MASK if key in SENSITIVE_FIELDS and value else value)
                for key, value in values.items()
            }
        return exported

    def import_config(self, data: Mapping[str, Mapping[str, Any]]) -> list[str]:
        """Apply exported configuration; masked credentials are left as they are."""
        imported = []
        for provider_id, values in data.items():
            if provider_id not in self._registrations:
                self._logger.warning("Skipping config for unknown provider %s", provider_id)
                continue
            partial = {key: value for key, value in values.items() if value != _MASK}
            self.configure_provider(provider_id, partial)
            imported.append(provider_id)
        return imported

    # -------------------------------------------------------------- instances

    async def create_provider_instance(self, provider_id: str) -> BaseProvider:
        """Return the live instance, building and swapping in a new one if needed.

        Concurrent callers for the same provider share one build.
        """
        self._registration(provider_id)
        current = self._instances.get(provider_id)
        if current is not None and provider_id not in self._stale:
            return current

        pending = self._pending.get(provider_id)
        if pending is None:
            pending = asyncio.ensure_future(self._build(provider_id))
            self._pending[provider_id] = pending
        return await asyncio.shield(pending)

    async def get_provider(self, provider_id: str) -> BaseProvider | None:
        """Return a usable instance, or ``None`` when the provider cannot be built.

        Only providers that were configured (or already have an instance) are
        built, so credential-less local servers are never contacted implicitly.
        """
        if provider_id not in self._registrations:
            return None
        if provider_id not in self._instances and provider_id not in self._user_config:
            return None
        try:
            return await self.create_provider_instance(provider_id)
        except ConfigurationError as exc:
            self._logger.warning("Provider %s is unusable: %s", provider_id, exc)
            return None

    def configured_provider_ids(self) -> list[str]:
        """Ids with a stored user config or a live instance, in registration order."""
        return [
            provider_id
            for provider_id in self._registrations
            if provider_id in self._user_config or provider_id in self._instances
        ]

    def is_configured(self, provider_id: str) -> bool:
        instance = self._instances.get(provider_id)
        return instance is not None and instance.initialized and instance.has_credential

    def find_providers_by_capability(
        self,
        required: Iterable[str] = (),
        *,
        min_context_length: int = 0,
        formats: Iterable[str] = (),
    ) -> list[str]:
        """Return ids whose capabilities cover ``required``, in registration order."""
        required = list(required)
        formats = list(formats)
        return [
            provider_id
            for provider_id in self._registrations
            if self.capabilities(provider_id).satisfies(
                required, min_context_length=min_context_length, formats=formats
            )
        ]

    def list_providers(self) -> list[dict[str, Any]]:
        listing = []
        for provider_id, registration in self._registrations.items():
            instance = self._instances.get(provider_id)
            listing.append(
                {
                    "provider_id": provider_id,
                    "display_name": registration.metadata.get(
                        "display_name", getattr(registration.factory, "display_name", provider_id)
                    ),
                    "configured": self.is_configured(provider_id),
                    "healthy": self.is_healthy(provider_id),
                    "models": [m.id for m in instance.models] if instance else [],
                }
            )
        return listing

    async def refresh_models(self, provider_id: str) -> list[ModelInfo]:
        """Reload the model list on explicit request."""
        instance = await self.get_provider(provider_id)
        if instance is None:
            raise NotConfiguredError(provider_id)
        instance.models = await instance.list_models()
        self._logger.info("Refreshed %d models for %s", len(instance.models), provider_id)
        return instance.models

    # ------------------------------------------------------ health and metrics

    async def check_health(self, provider_id: str) -> HealthResult:
        instance = await self.get_provider(provider_id)
        if instance is None:
            raise NotConfiguredError(provider_id)
        result = await instance.test_connection()
        self.update_health(provider_id, result)
        return result

    def update_health(self, provider_id: str, result: HealthResult) -> ProviderHealth:
        health = self._health.setdefault(provider_id, ProviderHealth())
        health.healthy = result.ok
        health.last_check = result.checked_at
        health.latency_s = result.latency_s
        health.error = result.error
        health.consecutive_failures = 0 if result.ok else health.consecutive_failures + 1
        if not result.ok:
            self._logger.warning("Provider %s failed health check: %s", provider_id, result.error)
        return health

    def health(self, provider_id: str) -> ProviderHealth | None:
        return self._health.get(provider_id)

    def is_healthy(self, provider_id: str) -> bool:
        # never probed counts as healthy
        health = self._health.get(provider_id)
        return health is None or health.healthy

    def metrics(self, provider_id: str) -> ProviderMetrics:
        return self._metrics.setdefault(provider_id, ProviderMetrics())

    async def aclose(self) -> None:
        for pending in self._pending.values():
            pending.cancel()
        instances = list(self._instances.values())
        self._instances.clear()
        for instance in instances:
            await instance.aclose()

    # ---------------------------------------------------------------- helpers

    def _registration(self, provider_id: str) -> _Registration:
        try:
            return self._registrations[provider_id]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown provider '{provider_id}'.") from exc

    @staticmethod
    def _effective_config(
        registration: _Registration, user_config: Mapping[str, Any]
    ) -> ProviderConfig:
        return build_config(
            {
                **registration.default_config,
                **user_config,
                "provider_id": registration.provider_id,
            }
        )

    async def _build(self, provider_id: str) -> BaseProvider:
        try:
            registration = self._registration(provider_id)
            generation = self._generation[provider_id]
            config = self._effective_config(registration, self._user_config.get(provider_id, {}))
            instance = registration.factory(config, transport=self._transport)
            try:
                await instance.initialize()
            except BaseException:
                await instance.aclose()
                raise
        except ConfigurationError:
            # A stale instance that can no longer be rebuilt stops being configured.
            previous = self._instances.pop(provider_id, None)
            self._stale.discard(provider_id)
            if previous is not None:
                await previous.retire()
            raise
        finally:
            self._pending.pop(provider_id, None)

        previous = self._instances.get(provider_id)
        self._instances[provider_id] = instance
        if self._generation.get(provider_id) == generation:
            self._stale.discard(provider_id)
        self._logger.info("Provider %s instance ready (model %s)", provider_id, config.default_model)
        if previous is not None and previous is not instance:
            await previous.retire()
        return instance


def register_builtin_providers(registry: ProviderRegistry) -> ProviderRegistry:
    """Register every bundled provider with its descriptor metadata."""
    for provider_cls in BUILTIN_PROVIDERS:
        registry.register_provider(
            provider_cls.provider_id,
            provider_cls,
            metadata={"display_name": provider_cls.display_name},
        )
    return registry
