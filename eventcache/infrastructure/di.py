"""Dependency injection provider for the registry and dedup coordinator."""

from dishka import Provider, Scope, from_context, provide

from eventcache.config import Config
from eventcache.domain.dedup.service.coordinator import DedupCoordinator
from eventcache.domain.registry.service.registry import EventRegistry


class EventCacheProvider(Provider):
    """Provides the app-wide EventRegistry and the DedupCoordinator bound to it.

    Both are APP-scoped singletons: single-flight only holds when every caller
    goes through the same registry.
    """

    config = from_context(provides=Config, scope=Scope.APP)

    @provide(scope=Scope.APP)
    def get_registry(self, config: Config) -> EventRegistry:
        return EventRegistry(default_wait_timeout=config.registry.default_wait_timeout)

    @provide(scope=Scope.APP)
    def get_coordinator(self, registry: EventRegistry, config: Config) -> DedupCoordinator:
        return DedupCoordinator(registry=registry, failure_mode=config.dedup.failure_mode)
