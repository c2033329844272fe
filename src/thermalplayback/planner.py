"""Predictive preloading around the playhead.

The planner decides which frames should be resident: a look-ahead window
that widens with playback speed, and an initial batch that must load before
playback may start. It issues the fetches through the
:class:`~thermalplayback.fetch.FetchCoordinator` and withdraws interest in
frames the playhead has moved away from. A background cursor walks the rest
of the series from just past the window.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
from collections.abc import Collection

from thermalplayback._types import Frame, Metadata
from thermalplayback.config import PlaybackConfig
from thermalplayback.fetch import FetchCoordinator
from thermalplayback.store import FrameStore

logger = logging.getLogger(__name__)


def _consume_preload_result(index: int, waiter: asyncio.Future[Frame]) -> None:
    if waiter.cancelled():
        return
    error = waiter.exception()
    if error is not None:
        logger.warning(f"Preload of frame {index} failed: {error}")


class PreloadPlanner:
    """Plan and request the working set of frames.

    Parameters
    ----------
    metadata : Metadata
        Dataset description (bounds every plan to ``[0, total_frames)``).
    store : FrameStore
        Consulted to skip frames that are already resident.
    coordinator : FetchCoordinator
        Used to issue and cancel fetches.
    config : PlaybackConfig, optional
        Supplies ``look_ahead_base_count``, ``initial_batch_size`` and
        ``background_batch_size``.

    Examples
    --------
    >>> planner.plan_window(10, 2.0, resident=set())  # doctest: +SKIP
    {10, 11, ..., 30}
    """

    def __init__(
        self,
        metadata: Metadata,
        store: FrameStore,
        coordinator: FetchCoordinator,
        config: PlaybackConfig | None = None,
    ) -> None:
        self._metadata = metadata
        self._store = store
        self._coordinator = coordinator
        self._config = config if config is not None else PlaybackConfig()
        # Background loading starts after the initial batch
        self._background_cursor = (
            min(self._config.initial_batch_size, metadata.total_frames)
            % metadata.total_frames
        )
        self._held_window: range | None = None

    @property
    def metadata(self) -> Metadata:
        return self._metadata

    def window_bounds(self, current_index: int, speed: float) -> tuple[int, int]:
        """Inclusive ``(start, end)`` of the preload window.

        The window is ``[current, current + ceil(K * speed)]`` clipped to the
        dataset, where ``K`` is ``look_ahead_base_count``.
        """
        last = self._metadata.last_index
        start = min(max(current_index, 0), last)
        look_ahead = math.ceil(self._config.look_ahead_base_count * speed)
        return start, min(start + look_ahead, last)

    def plan_window(
        self, current_index: int, speed: float, resident: Collection[int] = ()
    ) -> set[int]:
        """Indices that should be resident but are not in ``resident``."""
        start, end = self.window_bounds(current_index, speed)
        return {idx for idx in range(start, end + 1) if idx not in resident}

    def plan_initial_batch(self, batch_size: int | None = None) -> list[int]:
        """Ordered indices to load before playback may start."""
        if batch_size is None:
            batch_size = self._config.initial_batch_size
        return list(range(min(batch_size, self._metadata.total_frames)))

    def ensure_window(self, current_index: int, speed: float) -> list[int]:
        """Request every missing frame of the window, nearest first.

        Frames already resident are touched so LRU keeps them. Returns the
        indices that were requested.
        """
        start, end = self.window_bounds(current_index, speed)
        requested = []
        for idx in range(start, end + 1):
            if self._store.touch(idx):
                continue
            ticket = self._coordinator.ticket(idx)
            if ticket is not None and ticket.is_pending and not ticket.cancelled:
                continue
            # Requesting a cancelled in-flight index revives its ticket
            requested.append(idx)
            waiter = self._coordinator.request(idx)
            waiter.add_done_callback(
                lambda fut, idx=idx: _consume_preload_result(idx, fut)
            )
        if requested:
            logger.debug(f"preloading frames {requested[0]}-{requested[-1]}")
        return requested

    def rewindow(
        self, current_index: int, speed: float, keep: Collection[int] = ()
    ) -> list[int]:
        """Drop preload intent outside the new window, then refill it.

        Pending tickets outside ``[current - 1, window_end]`` and not in
        ``keep`` are cancelled (their fetches still complete into the store).
        Background loading restarts just past the new window and is held
        until the window's own fetches have settled. Returns the cancelled
        indices.
        """
        start, end = self.window_bounds(current_index, speed)
        retained = set(range(max(start - 1, 0), end + 1))
        retained.update(keep)
        cancelled = self._coordinator.cancel_outside(retained)
        if cancelled:
            logger.debug(f"cancelled preload of {len(cancelled)} frame(s) outside window")
        self.ensure_window(current_index, speed)
        self._background_cursor = (end + 1) % self._metadata.total_frames
        self._held_window = range(start, end + 1)
        return cancelled

    # ------------------------------------------------------------------
    # Background loading
    # ------------------------------------------------------------------

    @property
    def background_cursor(self) -> int:
        """Index where the next background batch starts looking."""
        return self._background_cursor

    def background_held(self) -> list[int]:
        """Window indices whose fetches must settle before background loading.

        The hold is placed by :meth:`rewindow` and released once none of the
        window's frames is in flight.
        """
        if self._held_window is None:
            return []
        pending = [idx for idx in self._held_window if self._coordinator.is_loading(idx)]
        if not pending:
            self._held_window = None
        return pending

    def next_background_batch(self, limit: int | None = None) -> list[int]:
        """Next frames for background loading, starting at the cursor.

        Scans forward from the cursor and wraps to the start of the series,
        skipping frames that are resident, in flight or failed. At most
        ``background_batch_size`` (and at most ``limit``) indices are
        returned; an empty list means nothing is left to load.
        """
        size = self._config.background_batch_size
        if limit is not None:
            size = min(size, limit)
        if size <= 0:
            return []
        total = self._metadata.total_frames
        cursor = self._background_cursor
        batch: list[int] = []
        for idx in itertools.chain(range(cursor, total), range(cursor)):
            if (
                self._store.has(idx)
                or self._coordinator.is_loading(idx)
                or self._coordinator.is_failed(idx)
            ):
                continue
            batch.append(idx)
            if len(batch) == size:
                break
        if batch:
            self._background_cursor = (batch[-1] + 1) % total
        return batch


__all__ = ["PreloadPlanner"]
