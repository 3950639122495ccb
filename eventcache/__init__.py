from eventcache.domain.dedup.model.result import FailureMode
from eventcache.domain.dedup.service.coordinator import DedupCoordinator
from eventcache.domain.registry.model.hook import HookScope
from eventcache.domain.registry.model.subscription import StateSnapshot, Subscription
from eventcache.domain.registry.service.registry import EventRegistry
from eventcache.domain.shared.error import EventCacheError, WaitTimeoutError

__all__ = [
    "DedupCoordinator",
    "EventCacheError",
    "EventRegistry",
    "FailureMode",
    "HookScope",
    "StateSnapshot",
    "Subscription",
    "WaitTimeoutError",
]
