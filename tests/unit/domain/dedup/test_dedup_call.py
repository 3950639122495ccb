"""Unit tests for DedupCoordinator.call (single-flight requests)."""

import asyncio

import pytest

from eventcache.domain.dedup.model.result import FailureMode
from eventcache.domain.dedup.service.coordinator import DedupCoordinator
from eventcache.domain.registry.service.registry import EventRegistry


class CountingProducer:
    """Async producer that counts invocations and returns a fixed value."""

    def __init__(self, value="v", delay: float = 0.01, error: Exception | None = None):
        self.value = value
        self.delay = delay
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.value


class TestSingleFlight:
    """Tests for collapsing concurrent calls."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_producer(self):
        """Concurrent calls for one key should run the producer once."""
        coordinator = DedupCoordinator()
        producer = CountingProducer("v")

        results = await asyncio.gather(
            coordinator.call("k", producer),
            coordinator.call("k", producer),
        )

        assert results == ["v", "v"]
        assert producer.calls == 1
        assert not coordinator.registry.has_event("k")

    @pytest.mark.asyncio
    async def test_many_waiters_get_same_object(self):
        """Every waiter should receive the very same result object."""
        coordinator = DedupCoordinator()
        producer = CountingProducer({"id": 42})

        results = await asyncio.gather(*(coordinator.call("user:42", producer) for _ in range(10)))

        assert producer.calls == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_different_keys_run_independently(self):
        """Distinct keys should each run their own producer."""
        coordinator = DedupCoordinator()
        producer = CountingProducer("v")

        await asyncio.gather(coordinator.call("a", producer), coordinator.call("b", producer))

        assert producer.calls == 2

    @pytest.mark.asyncio
    async def test_producer_is_not_run_inline(self):
        """The producer should start on a later loop iteration, not inside call()."""
        coordinator = DedupCoordinator()
        started = []

        def producer():
            started.append(True)
            return 1

        task = asyncio.create_task(coordinator.call("k", producer))
        await asyncio.sleep(0)
        assert started == []
        assert coordinator.registry.has_event("k")

        assert await task == 1
        assert started == [True]

    @pytest.mark.asyncio
    async def test_sync_producer(self):
        """A plain function producer should be supported."""
        coordinator = DedupCoordinator()

        assert await coordinator.call("k", lambda: 5) == 5

    @pytest.mark.asyncio
    async def test_reactivation_after_drain(self):
        """Once a key settled, a new call should run the producer again."""
        coordinator = DedupCoordinator()
        producer = CountingProducer("v")

        assert await coordinator.call("k", producer) == "v"
        assert await coordinator.call("k", producer) == "v"

        assert producer.calls == 2

    @pytest.mark.asyncio
    async def test_shared_registry_reports_in_flight_key(self):
        """With a shared registry the key should be visible while in flight."""
        registry = EventRegistry()
        coordinator = DedupCoordinator(registry=registry)
        producer = CountingProducer("v", delay=0.02)

        task = asyncio.create_task(coordinator.call("k", producer))
        await asyncio.sleep(0)
        assert registry.has_event("k")

        await task
        assert not registry.has_event("k")


class TestFailures:
    """Tests for producer failures and cancelled waiters."""

    @pytest.mark.asyncio
    async def test_failure_rejects_all_waiters(self):
        """With REJECT every waiter should see the producer's exception."""
        coordinator = DedupCoordinator()
        error = ValueError("upstream down")
        producer = CountingProducer(error=error)

        results = await asyncio.gather(
            coordinator.call("k", producer),
            coordinator.call("k", producer),
            return_exceptions=True,
        )

        assert results == [error, error]
        assert producer.calls == 1
        assert not coordinator.registry.has_event("k")

    @pytest.mark.asyncio
    async def test_resolve_mode_returns_exception_as_result(self):
        """With RESOLVE the exception object should be returned, not raised."""
        coordinator = DedupCoordinator(failure_mode=FailureMode.RESOLVE)
        error = ValueError("upstream down")

        result = await coordinator.call("k", CountingProducer(error=error))

        assert result is error

    @pytest.mark.asyncio
    async def test_call_after_failure_retries(self):
        """A failed key should not stay cached."""
        coordinator = DedupCoordinator()
        failing = CountingProducer(error=RuntimeError("nope"))

        with pytest.raises(RuntimeError):
            await coordinator.call("k", failing)

        assert await coordinator.call("k", CountingProducer("ok")) == "ok"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_others_waiting(self):
        """Cancelling one caller should not cancel the producer for the rest."""
        coordinator = DedupCoordinator()
        gate = asyncio.Event()
        calls = 0

        async def producer():
            nonlocal calls
            calls += 1
            await gate.wait()
            return "v"

        first = asyncio.create_task(coordinator.call("k", producer))
        second = asyncio.create_task(coordinator.call("k", producer))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        gate.set()
        assert await second == "v"
        assert calls == 1

    @pytest.mark.asyncio
    async def test_last_cancelled_waiter_cancels_producer(self):
        """When every caller leaves, the producer should stop and not feed later callers."""
        coordinator = DedupCoordinator()
        gate = asyncio.Event()
        calls = []
        finished = []

        async def old():
            calls.append("old")
            await gate.wait()
            finished.append("old")
            return "old-result"

        async def new():
            calls.append("new")
            await gate.wait()
            return "new-result"

        first = asyncio.create_task(coordinator.call("k", old))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert calls == ["old"]

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert not coordinator.registry.has_event("k")

        second = asyncio.create_task(coordinator.call("k", new))
        await asyncio.sleep(0)
        gate.set()

        assert await second == "new-result"
        await coordinator.registry.join()
        assert calls == ["old", "new"]
        assert finished == []
