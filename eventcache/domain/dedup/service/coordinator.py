"""DedupCoordinator - single-flight calls and shared subscriptions over an EventRegistry."""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from eventcache.domain.dedup.model.result import FailureMode, Outcome, TaggedResult
from eventcache.domain.registry.model.hook import HookId
from eventcache.domain.registry.model.subscription import EventKey, SubscriptionId
from eventcache.domain.registry.service.registry import EventRegistry

logger = logging.getLogger(__name__)

R = TypeVar("R")

Emit = Callable[[Any], None]
Closer = Callable[[], Awaitable[None] | None]
Opener = Callable[[Emit], Closer | None | Awaitable[Closer | None]]


@dataclass
class DedupCoordinator:
    """Collapses concurrent identical requests and subscriptions into one.

    Keys are event names in the registry's namespace: a key is "in flight"
    exactly while the registry has subscriptions for it, so no second table
    is kept. The presence check and the registration of the caller's own
    listener always happen in the same step, with no await in between.

    Example:
        coordinator = DedupCoordinator()

        async def load_user() -> dict:
            return await http.get_json("/users/42")

        # Only one request goes out; both callers get the same dict.
        a, b = await asyncio.gather(
            coordinator.call("user:42", load_user),
            coordinator.call("user:42", load_user),
        )
    """

    registry: EventRegistry = field(default_factory=EventRegistry)
    failure_mode: FailureMode = FailureMode.REJECT

    async def call(self, key: EventKey, producer: Callable[[], R | Awaitable[R]]) -> R:
        """Run ``producer`` at most once for all concurrent callers sharing ``key``.

        The first caller for an idle key starts the producer on the next loop
        iteration; every caller (that one included) waits for the broadcast
        result. After the result is delivered the key is idle again. If every
        caller is cancelled before that, the producer task is cancelled too.

        Raises:
            Exception: The producer's exception, when failure_mode is REJECT.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def deliver(result: TaggedResult, subscription_id: SubscriptionId) -> None:
            self.registry.unsubscribe(subscription_id)
            if future.done():
                return
            if result.outcome is Outcome.FAILURE and self.failure_mode is FailureMode.REJECT:
                future.set_exception(result.data)
            else:
                future.set_result(result.data)

        # No await between the check and the subscribe.
        activator = not self.registry.has_event(key)
        subscription_id = self.registry.subscribe(key, deliver)
        if activator:
            self._start_producer(key, producer)

        try:
            return await future
        finally:
            self.registry.unsubscribe(subscription_id)

    def subscribe(self, key: EventKey, opener: Opener, on_data: Callable[[Any], Any]) -> SubscriptionId:
        """Share one upstream subscription for ``key`` among all consumers.

        The first consumer for an idle key calls ``opener(emit)`` on the next
        loop iteration and keeps the closer it returns. Every value passed to
        ``emit`` reaches every consumer's ``on_data``. When the last consumer
        unsubscribes the closer is called exactly once.

        Returns:
            Subscription id to pass to unsubscribe().
        """
        activator = not self.registry.has_event(key)
        subscription_id = self.registry.subscribe(key, lambda data, _id: on_data(data))
        if not activator:
            return subscription_id

        logger.debug(f"Shared subscription for {key!r} opening")
        try:
            opening = self.registry.run_detached(self._open(key, opener), f"Opener for {key!r}")
        except RuntimeError:
            self.registry.unsubscribe(subscription_id)
            raise

        def teardown(name: EventKey, hook_id: HookId) -> None:
            self.registry.remove_hook(hook_id)
            self.registry.run_detached(self._close(name, opening), f"Closer for {name!r}")

        self.registry.on_event_drained(key, teardown)
        return subscription_id

    def unsubscribe(self, subscription_id: SubscriptionId) -> None:
        self.registry.unsubscribe(subscription_id)

    def _start_producer(self, key: EventKey, producer: Callable[[], Any]) -> None:
        """Run the producer detached; cancel it if every waiter leaves first."""

        async def produce() -> None:
            try:
                tagged = await self._run_producer(key, producer)
            finally:
                self.registry.remove_hook(abandon_id)
            await self.registry.emit_async(key, tagged)

        producing = self.registry.run_detached(produce(), f"Producer for {key!r}")

        def abandon(name: EventKey, hook_id: HookId) -> None:
            self.registry.remove_hook(hook_id)
            logger.debug(f"Single-flight call for {name!r} abandoned")
            producing.cancel()

        # The task starts on a later loop iteration, after abandon_id is bound.
        abandon_id = self.registry.on_event_drained(key, abandon)
        logger.debug(f"Single-flight call for {key!r} started")

    async def _run_producer(self, key: EventKey, producer: Callable[[], Any]) -> TaggedResult:
        try:
            result = producer()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.debug(f"Producer for {key!r} failed: {e}")
            return TaggedResult(outcome=Outcome.FAILURE, data=e)
        return TaggedResult(outcome=Outcome.SUCCESS, data=result)

    async def _open(self, key: EventKey, opener: Opener) -> Closer | None:
        def emit(data: Any) -> None:
            try:
                self.registry.emit_sync(key, data)
            except Exception as e:
                logger.error(f"Consumer of {key!r} failed: {e}", exc_info=True)

        closer = opener(emit)
        if inspect.isawaitable(closer):
            closer = await closer
        return closer

    async def _close(self, key: EventKey, opening: asyncio.Future[Closer | None]) -> None:
        try:
            closer = await opening
        except Exception:
            # Opener failure is already logged by its detached task.
            return
        if closer is None:
            return
        result = closer()
        if inspect.isawaitable(result):
            await result
        logger.debug(f"Shared subscription for {key!r} closed")
