# src/sandboxcore/registry.py
"""
Provider Registry: selects a provider adapter by backend kind and enforces
which backends the current environment may construct.

The environment is passed in explicitly rather than read from process
state, so the gating rule is a pure function (``is_provider_allowed``)
and trivially testable.

Usage:
    >>> registry = ProviderRegistry(Environment.DEV)
    >>> provider = registry.get_provider(SandboxProviderKind.CONTAINER)
    >>> session = await provider.get_or_create_sandbox(None, options)
"""

import logging
from typing import Callable

from .base import Environment, SandboxProvider, SandboxProviderKind
from .config import SandboxSystemConfig
from .exceptions import SandboxAccessDenied, SandboxInitializationError
from .providers.daytona_provider import DaytonaSandboxProvider
from .providers.docker_provider import DockerSandboxProvider
from .providers.e2b_provider import E2BSandboxProvider
from .providers.mock_provider import MockSandboxProvider
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[SandboxSystemConfig], SandboxProvider]

NON_PRODUCTION_PROVIDERS: frozenset[SandboxProviderKind] = frozenset(
    {SandboxProviderKind.MOCK, SandboxProviderKind.CONTAINER}
)


def is_provider_allowed(kind: SandboxProviderKind | str, environment: Environment | str) -> bool:
    """
    Check whether ``kind`` may be constructed in ``environment``.

    Mock and local container backends are only allowed outside production.
    """
    kind = SandboxProviderKind(kind)
    environment = Environment(environment)
    if environment == Environment.PROD:
        return kind not in NON_PRODUCTION_PROVIDERS
    return True


def _docker_factory(config: SandboxSystemConfig) -> SandboxProvider:
    return DockerSandboxProvider(config.docker, RetryPolicy.from_config(config.retry))


def _e2b_factory(config: SandboxSystemConfig) -> SandboxProvider:
    return E2BSandboxProvider(config.e2b, RetryPolicy.from_config(config.retry))


def _daytona_factory(config: SandboxSystemConfig) -> SandboxProvider:
    return DaytonaSandboxProvider(config.daytona, RetryPolicy.from_config(config.retry))


def _mock_factory(config: SandboxSystemConfig) -> SandboxProvider:
    return MockSandboxProvider()


DEFAULT_FACTORIES: dict[SandboxProviderKind, ProviderFactory] = {
    SandboxProviderKind.CONTAINER: _docker_factory,
    SandboxProviderKind.MICROVM: _e2b_factory,
    SandboxProviderKind.WORKSPACE: _daytona_factory,
    SandboxProviderKind.MOCK: _mock_factory,
}


class ProviderRegistry:
    """
    Factory and cache of provider adapters.

    Thread Safety:
        The registry is designed to be used from a single async context.
        For multi-threaded use, external synchronization is required.

    Example:
        >>> registry = ProviderRegistry(Environment.PROD)
        >>> registry.get_provider("mock")
        Traceback (most recent call last):
        ...
        SandboxAccessDenied: ...
    """

    def __init__(
        self,
        environment: Environment | str | None = None,
        config: SandboxSystemConfig | None = None,
    ):
        """
        Initialize the provider registry.

        Args:
            environment: Deployment environment; defaults to ``config.environment``
            config: System configuration passed to provider factories
        """
        self._config = config or SandboxSystemConfig()
        self._environment = Environment(environment or self._config.environment)
        self._factories: dict[SandboxProviderKind, ProviderFactory] = dict(DEFAULT_FACTORIES)
        self._instances: dict[SandboxProviderKind, SandboxProvider] = {}

        logger.info(f"ProviderRegistry initialized: environment={self._environment.value}")

    @property
    def environment(self) -> Environment:
        return self._environment

    @property
    def config(self) -> SandboxSystemConfig:
        return self._config

    def register_provider(self, kind: SandboxProviderKind | str, factory: ProviderFactory) -> None:
        """Replace the factory for ``kind``; a cached instance is discarded."""
        kind = SandboxProviderKind(kind)
        self._factories[kind] = factory
        self._instances.pop(kind, None)

    def available_providers(self) -> list[SandboxProviderKind]:
        """Backend kinds that are both registered and allowed here."""
        return [kind for kind in self._factories if is_provider_allowed(kind, self._environment)]

    def get_provider(self, kind: SandboxProviderKind | str) -> SandboxProvider:
        """
        Return the adapter for ``kind``, constructing it on first use.

        Raises:
            SandboxAccessDenied: If the backend is not allowed in this environment
            SandboxInitializationError: If no factory is registered
        """
        kind = SandboxProviderKind(kind)
        if not is_provider_allowed(kind, self._environment):
            raise SandboxAccessDenied(
                f"Sandbox provider '{kind.value}' is not allowed in "
                f"{self._environment.value} environment",
                resource=kind.value,
                reason="non-production provider",
                policy="environment",
            )

        if kind in self._instances:
            return self._instances[kind]

        factory = self._factories.get(kind)
        if factory is None:
            raise SandboxInitializationError(f"No factory registered for provider '{kind.value}'")

        provider = factory(self._config)
        self._instances[kind] = provider
        logger.debug(f"Constructed {type(provider).__name__} for '{kind.value}'")
        return provider
