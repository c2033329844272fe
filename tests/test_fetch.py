"""Tests for FetchCoordinator.

This test module validates:
- Deduplication (N concurrent requests -> one source call, same result)
- Retries with a bounded attempt count and terminal FrameLoadError
- Timeouts counted as retryable failures
- Cancellation (waiters cancelled, frame still cached, ticket revivable,
  wait_settled unaffected)
- Settlement order (waiter callbacks before listeners, pinned in between)
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import indexed_fields
from thermalplayback import (
    ArrayFrameSource,
    FetchCoordinator,
    FetchTimeoutError,
    FrameLoadError,
    FrameStore,
    PlaybackConfig,
    SourceUnavailableError,
)
from thermalplayback.fetch import TicketStatus


@pytest.fixture
def config() -> PlaybackConfig:
    return PlaybackConfig(backoff_base_ms=0.0, backoff_cap_ms=0.0, max_retries=3)


def make_coordinator(
    source: ArrayFrameSource, config: PlaybackConfig, capacity: int = 20
) -> FetchCoordinator:
    return FetchCoordinator(source, FrameStore(capacity), config)


class TestDeduplication:
    """Concurrent requests share one ticket."""

    def test_concurrent_requests_share_one_fetch(self, medium_source, config):
        """N waiters for the same index cost one source call."""

        async def scenario():
            coordinator = make_coordinator(medium_source, config)
            waiters = [coordinator.request(4) for _ in range(5)]
            frames = await asyncio.gather(*waiters)
            return coordinator, frames

        coordinator, frames = asyncio.run(scenario())

        assert medium_source.fetch_counts == {4: 1}
        assert all(frame is frames[0] for frame in frames)
        assert frames[0].index == 4
        assert coordinator.stats()["deduplicated"] == 4

    def test_resident_frame_needs_no_fetch(self, medium_source, config):
        """A request for a cached frame resolves without calling the source."""

        async def scenario():
            coordinator = make_coordinator(medium_source, config)
            first = await coordinator.request(2)
            await coordinator.wait_idle()
            waiter = coordinator.request(2)
            return first, waiter.done(), await waiter

        first, done_immediately, second = asyncio.run(scenario())

        assert done_immediately
        assert second is first
        assert medium_source.fetch_counts[2] == 1

    def test_request_outside_event_loop(self, medium_source, config):
        """request needs a running loop."""
        coordinator = make_coordinator(medium_source, config)

        with pytest.raises(RuntimeError):
            coordinator.request(0)

    def test_fetched_frame_is_stored(self, medium_source, config):
        """The coordinator writes fetched frames into the store."""

        async def scenario():
            store = FrameStore(10)
            coordinator = FetchCoordinator(medium_source, store, config)
            await coordinator.request(7)
            await coordinator.wait_idle()
            return store

        store = asyncio.run(scenario())

        assert store.has(7)
        assert not store.is_pinned(7)


class TestRetries:
    """Transient failures are retried a bounded number of times."""

    def test_recovers_after_transient_failures(self, config):
        """Two failures then success needs three attempts."""
        source = ArrayFrameSource(indexed_fields(10), 1.0, failures={3: 2})

        async def scenario():
            coordinator = make_coordinator(source, config)
            frame = await coordinator.request(3)
            return coordinator, frame

        coordinator, frame = asyncio.run(scenario())

        assert frame.index == 3
        assert source.fetch_counts[3] == 3
        assert coordinator.stats()["retries"] == 2
        assert coordinator.failed_indices == []

    @pytest.mark.parametrize("max_retries", [0, 1, 3])
    def test_exact_attempt_count_on_permanent_failure(self, max_retries):
        """A permanently failing index is tried exactly max_retries + 1 times."""
        source = ArrayFrameSource(indexed_fields(10), 1.0, failures={3: 1000})
        config = PlaybackConfig(
            backoff_base_ms=0.0, backoff_cap_ms=0.0, max_retries=max_retries
        )

        async def scenario():
            coordinator = make_coordinator(source, config)
            results = await asyncio.gather(
                coordinator.request(3), coordinator.request(3), return_exceptions=True
            )
            await coordinator.wait_idle()
            return coordinator, results

        coordinator, results = asyncio.run(scenario())

        assert source.fetch_counts[3] == max_retries + 1
        assert all(isinstance(r, FrameLoadError) for r in results)
        assert results[0] is results[1]
        assert results[0].attempts == max_retries + 1
        assert isinstance(results[0].cause, SourceUnavailableError)
        assert coordinator.failed_indices == [3]
        assert coordinator.stats()["failures"] == 1

    def test_out_of_range_is_retried_then_fails(self, config):
        """IndexOutOfRangeError is a source error and goes through retries."""
        source = ArrayFrameSource(indexed_fields(5), 1.0)

        async def scenario():
            coordinator = make_coordinator(source, config)
            with pytest.raises(FrameLoadError, match="frame 9"):
                await coordinator.request(9)

        asyncio.run(scenario())

        assert source.fetch_counts[9] == config.max_retries + 1

    def test_unexpected_exception_is_not_retried(self, config):
        """Bugs in the source (non-source errors) fail on the first attempt."""

        class BrokenSource(ArrayFrameSource):
            async def fetch_frame(self, index):
                self.fetch_counts[index] = self.fetch_counts.get(index, 0) + 1
                return {"step_index": index}

        source = BrokenSource(indexed_fields(5), 1.0)

        async def scenario():
            coordinator = make_coordinator(source, config)
            with pytest.raises(FrameLoadError) as exc_info:
                await coordinator.request(1)
            return exc_info.value

        error = asyncio.run(scenario())

        assert source.fetch_counts[1] == 1
        assert isinstance(error.cause, TypeError)

    def test_success_clears_failed_index(self, config):
        """A later successful fetch removes the index from failed_indices."""
        source = ArrayFrameSource(indexed_fields(5), 1.0, failures={2: 4})

        async def scenario():
            coordinator = make_coordinator(source, config)
            with pytest.raises(FrameLoadError):
                await coordinator.request(2)
            await coordinator.wait_idle()
            failed_before = coordinator.failed_indices
            await coordinator.request(2)
            await coordinator.wait_idle()
            return failed_before, coordinator.failed_indices

        failed_before, failed_after = asyncio.run(scenario())

        assert failed_before == [2]
        assert failed_after == []

    def test_timeout_counts_as_retry(self):
        """A slow attempt times out and the retry succeeds."""
        delays = iter([1.0, 0.0])
        source = ArrayFrameSource(
            indexed_fields(5), 1.0, latency_s=lambda index: next(delays)
        )
        config = PlaybackConfig(
            backoff_base_ms=0.0, backoff_cap_ms=0.0, fetch_timeout_ms=20.0
        )

        async def scenario():
            coordinator = make_coordinator(source, config)
            frame = await coordinator.request(1)
            return coordinator, frame

        coordinator, frame = asyncio.run(scenario())

        assert frame.index == 1
        assert source.fetch_counts[1] == 2
        assert coordinator.stats()["retries"] == 1

    def test_persistent_timeout_fails_with_timeout_cause(self):
        """Every attempt timing out ends in FrameLoadError caused by a timeout."""
        source = ArrayFrameSource(indexed_fields(5), 1.0, latency_s=1.0)
        config = PlaybackConfig(
            backoff_base_ms=0.0,
            backoff_cap_ms=0.0,
            fetch_timeout_ms=10.0,
            max_retries=1,
        )

        async def scenario():
            coordinator = make_coordinator(source, config)
            with pytest.raises(FrameLoadError) as exc_info:
                await coordinator.request(0)
            return exc_info.value

        error = asyncio.run(scenario())

        assert isinstance(error.cause, FetchTimeoutError)
        assert error.attempts == 2


class TestCancellation:
    """Cancelling withdraws interest but keeps the fetch."""

    def test_cancel_suppresses_delivery_but_caches(self, config):
        """Waiters are cancelled; the frame still lands in the store."""
        source = ArrayFrameSource(indexed_fields(5), 1.0, latency_s=0.01)

        async def scenario():
            store = FrameStore(10)
            coordinator = FetchCoordinator(source, store, config)
            waiter = coordinator.request(3)
            assert coordinator.cancel(3) is True
            await coordinator.wait_idle()
            return store, waiter

        store, waiter = asyncio.run(scenario())

        assert waiter.cancelled()
        assert store.has(3)
        assert source.fetch_counts[3] == 1

    def test_cancel_is_idempotent_and_never_raises(self, config, medium_source):
        """Cancelling twice or cancelling an unknown index returns False."""

        async def scenario():
            coordinator = make_coordinator(medium_source, config)
            coordinator.request(1)
            results = [coordinator.cancel(1), coordinator.cancel(1), coordinator.cancel(42)]
            await coordinator.wait_idle()
            return results

        assert asyncio.run(scenario()) == [True, False, False]

    def test_rerequest_revives_cancelled_ticket(self, config):
        """Requesting a cancelled in-flight index reuses the same fetch."""
        source = ArrayFrameSource(indexed_fields(5), 1.0, latency_s=0.01)

        async def scenario():
            coordinator = make_coordinator(source, config)
            coordinator.request(2)
            coordinator.cancel(2)
            assert coordinator.pending_indices() == []
            assert coordinator.in_flight_indices() == [2]
            frame = await coordinator.request(2)
            return frame

        frame = asyncio.run(scenario())

        assert frame.index == 2
        assert source.fetch_counts[2] == 1

    def test_cancel_outside_keeps_window(self, config):
        """cancel_outside cancels exactly the tickets not kept."""
        source = ArrayFrameSource(indexed_fields(10), 1.0, latency_s=0.01)

        async def scenario():
            coordinator = make_coordinator(source, config)
            for idx in range(6):
                coordinator.request(idx)
            cancelled = coordinator.cancel_outside(range(2, 4))
            pending = coordinator.pending_indices()
            await coordinator.wait_idle()
            return cancelled, pending

        cancelled, pending = asyncio.run(scenario())

        assert sorted(cancelled) == [0, 1, 4, 5]
        assert pending == [2, 3]

    def test_wait_settled_outlives_cancellation(self, config):
        """wait_settled returns once cancelled fetches have landed in the store."""
        source = ArrayFrameSource(indexed_fields(5), 1.0, latency_s=0.01)

        async def scenario():
            store = FrameStore(10)
            coordinator = FetchCoordinator(source, store, config)
            waiters = [coordinator.request(idx) for idx in (0, 1)]
            coordinator.cancel_outside(())
            await coordinator.wait_settled([0, 1, 4])
            return coordinator, store, waiters

        coordinator, store, waiters = asyncio.run(scenario())

        assert all(waiter.cancelled() for waiter in waiters)
        assert store.has(0) and store.has(1)
        assert coordinator.in_flight_indices() == []

    def test_close_aborts_in_flight(self, config):
        """close cancels tasks and forgets every ticket."""
        source = ArrayFrameSource(indexed_fields(5), 1.0, latency_s=1.0)

        async def scenario():
            store = FrameStore(10)
            coordinator = FetchCoordinator(source, store, config)
            waiter = coordinator.request(0)
            await asyncio.sleep(0)
            coordinator.close()
            await asyncio.sleep(0)
            return coordinator, store, waiter

        coordinator, store, waiter = asyncio.run(scenario())

        assert waiter.cancelled()
        assert coordinator.in_flight_indices() == []
        assert len(store) == 0


class TestSettlementOrder:
    """Waiters are notified before the ticket is finalised."""

    def test_waiter_callbacks_run_before_listeners(self, config, medium_source):
        """Listeners fire after waiter done-callbacks, with the frame pinned meanwhile."""
        events: list[str] = []

        async def scenario():
            store = FrameStore(10)
            coordinator = FetchCoordinator(medium_source, store, config)
            coordinator.add_listener(
                lambda index, error: events.append(f"listener:{index}:{error}")
            )
            waiter = coordinator.request(5)
            waiter.add_done_callback(
                lambda fut: events.append(f"waiter:pinned={store.is_pinned(5)}")
            )
            await coordinator.wait_idle()
            return store, coordinator

        store, coordinator = asyncio.run(scenario())

        assert events == ["waiter:pinned=True", "listener:5:None"]
        assert not store.is_pinned(5)
        assert coordinator.ticket(5) is None

    def test_listener_receives_error(self, config):
        """Listeners get the FrameLoadError for failed tickets."""
        source = ArrayFrameSource(indexed_fields(5), 1.0, failures={1: 100})
        seen = []

        async def scenario():
            coordinator = make_coordinator(source, config)
            coordinator.add_listener(lambda index, error: seen.append((index, error)))
            waiter = coordinator.request(1)
            ticket = coordinator.ticket(1)
            await asyncio.gather(waiter, return_exceptions=True)
            await coordinator.wait_idle()
            return ticket

        ticket = asyncio.run(scenario())

        assert ticket.status is TicketStatus.FAILED
        assert seen[0][0] == 1
        assert isinstance(seen[0][1], FrameLoadError)
