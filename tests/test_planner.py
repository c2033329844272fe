"""Tests for PreloadPlanner.

This test module validates:
- Window bounds scale with speed and clip to the dataset
- plan_window excludes resident frames
- Initial batch planning and the background cursor
- ensure_window / rewindow issue and cancel fetches
"""

from __future__ import annotations

import asyncio

import pytest
from hypothesis import given
from hypothesis import strategies as st

from conftest import indexed_fields
from thermalplayback import (
    ALLOWED_SPEEDS,
    ArrayFrameSource,
    FetchCoordinator,
    Frame,
    FrameStore,
    Metadata,
    PlaybackConfig,
    PreloadPlanner,
)


def make_planner(
    total_frames: int = 100,
    look_ahead: int = 10,
    source: ArrayFrameSource | None = None,
) -> PreloadPlanner:
    config = PlaybackConfig(
        look_ahead_base_count=look_ahead,
        initial_batch_size=10,
        background_batch_size=25,
        backoff_base_ms=0.0,
        backoff_cap_ms=0.0,
    )
    if source is None:
        source = ArrayFrameSource(indexed_fields(total_frames), 1.0)
    store = FrameStore(config.resolved_capacity)
    coordinator = FetchCoordinator(source, store, config)
    return PreloadPlanner(Metadata(total_frames, 1.0), store, coordinator, config)


class TestWindowPlanning:
    """Tests for the look-ahead window."""

    @pytest.mark.parametrize(
        ("speed", "expected_end"),
        [(0.5, 15), (1.0, 20), (2.0, 30), (5.0, 60), (10.0, 99)],
    )
    def test_window_scales_with_speed(self, speed: float, expected_end: int):
        """The window is [cur, cur + ceil(K * speed)] clipped to the last frame."""
        planner = make_planner()

        assert planner.window_bounds(10, speed) == (10, expected_end)

    def test_window_clipped_at_end(self):
        """Near the end the window stops at the last index."""
        planner = make_planner(total_frames=12)

        assert planner.window_bounds(9, 1.0) == (9, 11)

    def test_plan_window_example(self):
        """Window at index 10, 2x, nothing resident: 10..30 inclusive."""
        planner = make_planner()

        assert planner.plan_window(10, 2.0, resident=set()) == set(range(10, 31))

    def test_plan_window_excludes_resident(self):
        """Resident frames are not planned again."""
        planner = make_planner()

        planned = planner.plan_window(0, 1.0, resident={0, 1, 2})

        assert planned == set(range(3, 11))

    @given(
        current=st.integers(min_value=0, max_value=99),
        speed=st.sampled_from(ALLOWED_SPEEDS),
        resident=st.sets(st.integers(min_value=0, max_value=99), max_size=30),
    )
    def test_plan_window_bounds_property(self, current, speed, resident):
        """Planned indices are valid, disjoint from resident, and in the window."""
        planner = make_planner()

        planned = planner.plan_window(current, speed, resident=resident)

        assert planned.isdisjoint(resident)
        assert all(current <= idx <= min(current + 10 * speed, 99) for idx in planned)


class TestBatchPlanning:
    """Tests for initial and background batches."""

    def test_initial_batch(self):
        """The initial batch is the first N frames in order."""
        assert make_planner().plan_initial_batch() == list(range(10))

    def test_initial_batch_short_series(self):
        """A series shorter than the batch loads completely."""
        assert make_planner(total_frames=3).plan_initial_batch() == [0, 1, 2]

    def test_background_starts_after_initial_batch(self):
        """Background batches continue from the end of the initial batch."""
        planner = make_planner(total_frames=60)

        assert planner.background_cursor == 10
        assert planner.next_background_batch() == list(range(10, 35))
        assert planner.next_background_batch() == list(range(35, 60))
        assert planner.background_cursor == 0

    def test_background_skips_resident_and_respects_limit(self):
        """Resident frames are skipped and the batch never exceeds the limit."""
        planner = make_planner(total_frames=60)
        for idx in range(10, 15):
            planner._store.put(idx, Frame(index=idx, time=float(idx), values=[0.0]))

        assert planner.next_background_batch(limit=3) == [15, 16, 17]
        assert planner.next_background_batch(limit=0) == []

    def test_background_wraps_then_finishes(self):
        """Frames before the cursor are loaded last; nothing is left afterwards."""
        planner = make_planner(total_frames=30)
        for idx in range(30):
            if idx not in (3, 25):
                planner._store.put(idx, Frame(index=idx, time=float(idx), values=[0.0]))

        assert planner.next_background_batch() == [25, 3]
        for idx in (3, 25):
            planner._store.put(idx, Frame(index=idx, time=float(idx), values=[0.0]))
        assert planner.next_background_batch() == []

    def test_background_skips_failed_frames(self):
        """A frame whose fetch failed terminally is not retried in the background."""
        source = ArrayFrameSource(indexed_fields(40), 1.0, failures={12: 100})
        planner = make_planner(total_frames=40, source=source)

        async def scenario():
            waiter = planner._coordinator.request(12)
            await asyncio.gather(waiter, return_exceptions=True)
            await planner._coordinator.wait_idle()
            return planner.next_background_batch(limit=3)

        assert asyncio.run(scenario()) == [10, 11, 13]

    def test_rewindow_holds_background_until_window_settles(self):
        """Background loading waits for the new window, then resumes past it."""
        source = ArrayFrameSource(indexed_fields(100), 1.0, latency_s=0.005)
        planner = make_planner(total_frames=100, source=source)

        async def scenario():
            planner.rewindow(50, 1.0)
            held = planner.background_held()
            await planner._coordinator.wait_idle()
            return held, planner.background_held()

        held, released = asyncio.run(scenario())

        assert planner.background_cursor == 61
        assert held == list(range(50, 61))
        assert released == []
        assert planner.next_background_batch(limit=2) == [61, 62]


class TestWindowFetching:
    """ensure_window and rewindow against a live coordinator."""

    def test_ensure_window_requests_missing_frames_once(self):
        """Frames already in flight are not requested again."""
        source = ArrayFrameSource(indexed_fields(50), 1.0, latency_s=0.005)
        planner = make_planner(total_frames=50, look_ahead=4, source=source)

        async def scenario():
            first = planner.ensure_window(0, 1.0)
            second = planner.ensure_window(0, 1.0)
            await planner._coordinator.wait_idle()
            return first, second

        first, second = asyncio.run(scenario())

        assert first == [0, 1, 2, 3, 4]
        assert second == []
        assert all(source.fetch_counts[i] == 1 for i in range(5))

    def test_ensure_window_skips_resident(self):
        """A fully resident window requests nothing."""
        planner = make_planner(total_frames=50, look_ahead=2)

        async def scenario():
            planner.ensure_window(0, 1.0)
            await planner._coordinator.wait_idle()
            return planner.ensure_window(0, 1.0)

        assert asyncio.run(scenario()) == []

    def test_rewindow_cancels_far_tickets(self):
        """Moving the playhead cancels pending fetches outside the new window."""
        source = ArrayFrameSource(indexed_fields(50), 1.0, latency_s=0.01)
        planner = make_planner(total_frames=50, look_ahead=2, source=source)

        async def scenario():
            planner.ensure_window(0, 1.0)
            cancelled = planner.rewindow(30, 1.0)
            pending = planner._coordinator.pending_indices()
            await planner._coordinator.wait_idle()
            return cancelled, pending

        cancelled, pending = asyncio.run(scenario())

        assert sorted(cancelled) == [0, 1, 2]
        assert pending == [30, 31, 32]
        # Cancelled fetches still complete into the store
        assert all(planner._store.has(i) for i in range(3))

    def test_rewindow_keeps_previous_frame_and_extra(self):
        """The frame just behind the playhead and explicit keeps survive."""
        source = ArrayFrameSource(indexed_fields(50), 1.0, latency_s=0.01)
        planner = make_planner(total_frames=50, look_ahead=2, source=source)

        async def scenario():
            planner.ensure_window(4, 1.0)
            planner._coordinator.request(40)
            cancelled = planner.rewindow(5, 1.0, keep={40})
            await planner._coordinator.wait_idle()
            return cancelled

        cancelled = asyncio.run(scenario())

        assert cancelled == []
