"""Lifecycle hook records fired on subscription teardown."""

from enum import Enum
from typing import Any, Awaitable, Callable, Hashable, NewType

from eventcache.domain.shared.model.value import ValueObject

HookId = NewType("HookId", str)

HookCallback = Callable[[Any, HookId], Awaitable[None] | None]
"""Called as ``callback(key, hook_id)``; may return an awaitable."""


class HookScope(Enum):
    """Teardown event a lifecycle hook listens for.

    The hook key is the subscription id for SUBSCRIPTION_REMOVED, the event
    name for EVENT_DRAINED, and None for REGISTRY_CLEARED.
    """

    SUBSCRIPTION_REMOVED = "subscription_removed"
    EVENT_DRAINED = "event_drained"
    REGISTRY_CLEARED = "registry_cleared"


class LifecycleHook(ValueObject):
    """A callback registered against one (scope, key) pair.

    Hooks stay registered after firing until removed explicitly.
    """

    scope: HookScope
    key: Hashable | None = None
    id: HookId
    callback: Callable[..., Any]
