"""Subscription and state snapshot records owned by the EventRegistry."""

from typing import Any, Awaitable, Callable, Hashable, NewType

from eventcache.domain.shared.model.value import ValueObject

EventKey = Hashable
SubscriptionId = NewType("SubscriptionId", str)

SubscriberCallback = Callable[[Any, SubscriptionId], Awaitable[None] | None]
"""Called as ``callback(data, subscription_id)``; may return an awaitable."""


class Subscription(ValueObject):
    """A live registration of one callback against one event name."""

    name: EventKey
    id: SubscriptionId
    callback: Callable[..., Any]


class StateSnapshot(ValueObject):
    """Last value set for an event name, replayed to late subscribers."""

    name: EventKey
    value: Any = None
