"""EventRegistry - in-process publish/subscribe with state replay and lifecycle hooks."""

import asyncio
import inspect
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Hashable, Iterable

from eventcache.domain.registry.model.hook import HookCallback, HookId, HookScope, LifecycleHook
from eventcache.domain.registry.model.subscription import (
    EventKey,
    StateSnapshot,
    SubscriberCallback,
    Subscription,
    SubscriptionId,
)
from eventcache.domain.shared.error import WaitTimeoutError
from eventcache.util.ids import new_id

logger = logging.getLogger(__name__)

SubscriptionFilter = Callable[[list[Subscription]], Subscription | Iterable[Subscription]]


class EventRegistry:
    """Owns live subscriptions, retained state snapshots and lifecycle hooks.

    Subscriptions are kept per event name in registration order, with a
    second index from subscription id to record. Every mutation runs to
    completion without suspending, so callers on the same event loop never
    observe a half-applied change.

    Callbacks may be plain functions or return awaitables. Awaitables that
    nobody waits on (from emit_sync, state replay, async hooks) are run as
    detached tasks on the running loop; their failures are logged.

    Example:
        registry = EventRegistry()
        sub_id = registry.subscribe("progress", lambda data, _id: print(data))
        registry.set_state("progress", 0.5)   # prints 0.5
        registry.unsubscribe(sub_id)
    """

    def __init__(
        self,
        subscriptions: Iterable[Subscription] = (),
        *,
        id_factory: Callable[[], str] = new_id,
        default_wait_timeout: float | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            subscriptions: Subscription records to start with, in delivery order.
            id_factory: Returns a fresh unique id for each subscription and hook.
            default_wait_timeout: Seconds used by wait_once_timeout when no
                timeout is passed.
        """
        self._id_factory = id_factory
        self._default_wait_timeout = default_wait_timeout

        self._events: dict[EventKey, dict[SubscriptionId, Subscription]] = {}
        self._index: dict[SubscriptionId, Subscription] = {}
        self._states: dict[EventKey, StateSnapshot] = {}
        self._hooks: dict[tuple[HookScope, Hashable | None], dict[HookId, LifecycleHook]] = {}
        self._hook_index: dict[HookId, LifecycleHook] = {}
        self._tasks: set[asyncio.Future[Any]] = set()

        for subscription in subscriptions:
            self._attach(subscription)

    # --- Subscriptions ---

    def subscribe(self, name: EventKey, callback: SubscriberCallback) -> SubscriptionId:
        """Register ``callback`` for ``name`` and return the subscription id.

        If a state snapshot exists for ``name`` the callback is invoked with it
        before this method returns.
        """
        subscription = Subscription(
            name=name, id=SubscriptionId(self._id_factory()), callback=callback
        )
        self._attach(subscription)

        snapshot = self._states.get(name)
        if snapshot is not None:
            self._dispatch(subscription, snapshot.value)
        return subscription.id

    def unsubscribe(self, subscription_id: SubscriptionId) -> None:
        """Remove one subscription and run the teardown hooks. Unknown ids are ignored."""
        subscription = self._detach(subscription_id)
        if subscription is not None:
            self._teardown([subscription])

    def unsubscribe_event(self, name: EventKey) -> None:
        """Remove every subscription for ``name`` in one batch."""
        bucket = self._events.pop(name, None)
        if not bucket:
            return
        for subscription_id in bucket:
            del self._index[subscription_id]
        self._teardown(list(bucket.values()))

    def clear(self) -> None:
        """Remove all subscriptions, ending the hook cascade with REGISTRY_CLEARED."""
        removed = list(self._index.values())
        self._events.clear()
        self._index.clear()
        self._teardown(removed)

    def get_subscriptions(self, name: EventKey) -> list[Subscription]:
        """Return the live subscriptions for ``name`` in delivery order."""
        return list(self._events.get(name, {}).values())

    def has_event(self, name: EventKey) -> bool:
        return name in self._events

    def has(self, subscription_id: SubscriptionId) -> bool:
        return subscription_id in self._index

    def has_callback(self, callback: Callable[..., Any]) -> bool:
        return any(s.callback == callback for s in self._index.values())

    # --- Emission ---

    def emit_sync(self, name: EventKey, data: Any = None) -> None:
        """Call every current subscriber of ``name`` in registration order.

        Awaitables returned by callbacks are not waited on. An exception raised
        by a callback propagates and stops delivery to the remaining ones.
        """
        for subscription in self.get_subscriptions(name):
            self._dispatch(subscription, data)

    async def emit_async(self, name: EventKey, data: Any = None) -> None:
        """Call every current subscriber of ``name`` and wait for all of them.

        Every callback is invoked and every result is awaited, even when some
        fail. Once all have settled, the first failure observed is re-raised.
        """
        pending: list[asyncio.Future[Any]] = []
        failures: list[Exception] = []

        for subscription in self.get_subscriptions(name):
            try:
                result = subscription.callback(data, subscription.id)
            except Exception as e:
                failures.append(e)
                continue
            if inspect.isawaitable(result):
                pending.append(asyncio.ensure_future(result))

        for future in asyncio.as_completed(pending):
            try:
                await future
            except Exception as e:
                failures.append(e)

        if failures:
            raise failures[0]

    # --- State ---

    def set_state(self, name: EventKey, data: Any) -> None:
        """Store ``data`` as the snapshot for ``name``, then emit_sync it."""
        self._states[name] = StateSnapshot(name=name, value=data)
        self.emit_sync(name, data)

    async def set_state_async(self, name: EventKey, data: Any) -> None:
        """Store ``data`` as the snapshot for ``name``, then emit_async it."""
        self._states[name] = StateSnapshot(name=name, value=data)
        await self.emit_async(name, data)

    def get_state(self, name: EventKey, default: Any = None) -> Any:
        snapshot = self._states.get(name)
        return default if snapshot is None else snapshot.value

    def has_state(self, name: EventKey) -> bool:
        return name in self._states

    def remove_state(self, name: EventKey) -> None:
        self._states.pop(name, None)

    # --- Waiting ---

    async def wait_once(self, name: EventKey) -> Any:
        """Wait for the next value delivered to ``name`` (or its current state).

        The temporary subscription is removed as soon as a value arrives, or
        when the waiting task is cancelled.
        """
        future, subscription_id = self._listen_once(name)
        try:
            return await future
        finally:
            self.unsubscribe(subscription_id)

    async def wait_once_timeout(
        self,
        name: EventKey,
        timeout: float | None = None,
        on_timeout: Callable[[], Any] | None = None,
    ) -> Any:
        """Wait for the next value of ``name`` for at most ``timeout`` seconds.

        The listener is attached before the timer starts, so an existing
        snapshot wins even with a zero timeout.

        On timeout, returns None when ``on_timeout`` is not given. Otherwise
        ``on_timeout()`` is called: an exception it returns is raised as is,
        any other value is raised wrapped in WaitTimeoutError.

        Raises:
            ValueError: If no timeout is given and no default is configured.
            WaitTimeoutError: If the wait timed out and on_timeout returned a
                non-exception value.
        """
        if timeout is None:
            timeout = self._default_wait_timeout
        if timeout is None:
            raise ValueError("timeout is required when no default_wait_timeout is configured")

        future, subscription_id = self._listen_once(name)
        try:
            async with asyncio.timeout(timeout):
                return await future
        except TimeoutError:
            self.unsubscribe(subscription_id)
            if on_timeout is None:
                return None
            reason = on_timeout()
            if isinstance(reason, BaseException):
                raise reason from None
            raise WaitTimeoutError(name, reason) from None
        finally:
            self.unsubscribe(subscription_id)

    def _listen_once(self, name: EventKey) -> tuple[asyncio.Future[Any], SubscriptionId]:
        """Subscribe a listener that resolves the returned future with the first value."""
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def resolve(data: Any, subscription_id: SubscriptionId) -> None:
            self.unsubscribe(subscription_id)
            if not future.done():
                future.set_result(data)

        return future, self.subscribe(name, resolve)

    # --- Lifecycle hooks ---

    def register_hook(
        self, scope: HookScope, key: Hashable | None, callback: HookCallback
    ) -> HookId:
        """Register ``callback`` to run on the teardown event (scope, key).

        The callback is called as ``callback(key, hook_id)`` each time the
        event fires, until the hook is removed.
        """
        if scope is HookScope.REGISTRY_CLEARED:
            key = None
        hook = LifecycleHook(scope=scope, key=key, id=HookId(self._id_factory()), callback=callback)
        self._hooks.setdefault((scope, key), {})[hook.id] = hook
        self._hook_index[hook.id] = hook
        return hook.id

    def on_subscription_removed(
        self, subscription_id: SubscriptionId, callback: HookCallback
    ) -> HookId:
        return self.register_hook(HookScope.SUBSCRIPTION_REMOVED, subscription_id, callback)

    def on_event_drained(self, name: EventKey, callback: HookCallback) -> HookId:
        return self.register_hook(HookScope.EVENT_DRAINED, name, callback)

    def on_cleared(self, callback: HookCallback) -> HookId:
        return self.register_hook(HookScope.REGISTRY_CLEARED, None, callback)

    def remove_hook(self, hook_id: HookId) -> None:
        """Remove a lifecycle hook. Unknown ids are ignored."""
        hook = self._hook_index.pop(hook_id, None)
        if hook is None:
            return
        bucket = self._hooks[(hook.scope, hook.key)]
        del bucket[hook_id]
        if not bucket:
            del self._hooks[(hook.scope, hook.key)]

    def has_hook(self, hook_id: HookId) -> bool:
        return hook_id in self._hook_index

    # --- Derivation ---

    def derive(self, subscription_filter: SubscriptionFilter | None = None) -> "EventRegistry":
        """Create an independent registry seeded with (a filtered copy of) the subscriptions.

        ``subscription_filter`` receives the ordered subscription list and
        returns either one subscription or an iterable of them. State
        snapshots and hooks are not carried over.
        """
        subscriptions = list(self._index.values())
        if subscription_filter is not None:
            selected = subscription_filter(subscriptions)
            if isinstance(selected, Subscription):
                subscriptions = [selected]
            else:
                subscriptions = list(selected)
        return type(self)(
            subscriptions,
            id_factory=self._id_factory,
            default_wait_timeout=self._default_wait_timeout,
        )

    # --- Detached tasks ---

    def run_detached(self, awaitable: Awaitable[Any], label: str) -> asyncio.Future[Any]:
        """Run ``awaitable`` as a task nobody waits on.

        The registry holds a reference until the task finishes and logs its
        failure under ``label``. Requires a running event loop.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise RuntimeError(f"{label} needs a running event loop") from None

        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)
        task.add_done_callback(partial(self._on_detached_done, label))
        return task

    async def join(self) -> None:
        """Wait until all detached tasks, including ones they start, have finished."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _on_detached_done(self, label: str, task: asyncio.Future[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{label} failed: {error}", exc_info=error)

    # --- Internals ---

    def _attach(self, subscription: Subscription) -> None:
        self._events.setdefault(subscription.name, {})[subscription.id] = subscription
        self._index[subscription.id] = subscription

    def _detach(self, subscription_id: SubscriptionId) -> Subscription | None:
        subscription = self._index.pop(subscription_id, None)
        if subscription is None:
            return None
        bucket = self._events[subscription.name]
        del bucket[subscription_id]
        if not bucket:
            del self._events[subscription.name]
        return subscription

    def _dispatch(self, subscription: Subscription, data: Any) -> None:
        result = subscription.callback(data, subscription.id)
        if inspect.isawaitable(result):
            self.run_detached(result, f"Subscriber {subscription.id} of {subscription.name!r}")

    def _teardown(self, removed: list[Subscription]) -> None:
        """Fire removal hooks for already-detached subscriptions.

        Order: SUBSCRIPTION_REMOVED per id, EVENT_DRAINED once a name has no
        subscriptions left, then REGISTRY_CLEARED if the registry is empty.
        """
        if not removed:
            return
        last_of_name = {s.name: i for i, s in enumerate(removed)}

        for i, subscription in enumerate(removed):
            self._fire_hooks(HookScope.SUBSCRIPTION_REMOVED, subscription.id)
            if last_of_name[subscription.name] == i and not self.has_event(subscription.name):
                self._fire_hooks(HookScope.EVENT_DRAINED, subscription.name)

        if not self._index:
            self._fire_hooks(HookScope.REGISTRY_CLEARED, None)

    def _fire_hooks(self, scope: HookScope, key: Hashable | None) -> None:
        hooks = list(self._hooks.get((scope, key), {}).values())
        for hook in hooks:
            try:
                result = hook.callback(key, hook.id)
                if inspect.isawaitable(result):
                    self.run_detached(result, f"{scope.value} hook {hook.id}")
            except Exception as e:
                logger.warning(f"{scope.value} hook {hook.id} failed: {e}", exc_info=True)
