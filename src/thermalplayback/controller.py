"""Playback clock and state machine for precomputed temperature fields.

:class:`PlaybackController` owns the frame store, fetch coordinator and
preload planner for one dataset and advances a virtual playhead from
elapsed wall time and a speed multiplier. It pushes frames to a render sink
and reports state, speed and scrub changes through :attr:`events`.

State machine::

    Idle -> Loading -> Paused <-> Playing
                 \\        \\      /
                  +------> Scrubbing -> Paused
    (any) -> Error    (terminal; leave via initialize / reinitialize)
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import math
import numbers
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

import numpy as np

from thermalplayback._events import (
    SCRUB_POSITION_CHANGED,
    SPEED_CHANGED,
    STATE_CHANGED,
    EventEmitter,
)
from thermalplayback._timing import timed
from thermalplayback._types import (
    ALLOWED_SPEEDS,
    Frame,
    FrameDisplayInfo,
    LoadProgress,
    Metadata,
)
from thermalplayback.config import PlaybackConfig
from thermalplayback.errors import (
    FrameLoadError,
    InvalidMetadataError,
    InvalidSpeedError,
    NotReadyError,
)
from thermalplayback.fetch import FetchCoordinator
from thermalplayback.planner import PreloadPlanner, _consume_preload_result
from thermalplayback.protocols import FrameSource, NullRenderSink, RenderSink
from thermalplayback.store import FrameStore

logger = logging.getLogger(__name__)


class PlaybackMode(str, enum.Enum):
    """States of the playback state machine."""

    IDLE = "idle"
    LOADING = "loading"
    PAUSED = "paused"
    PLAYING = "playing"
    SCRUBBING = "scrubbing"
    ERROR = "error"


@dataclass
class PlaybackState:
    """Mutable playback state, owned exclusively by the controller.

    Attributes
    ----------
    current_index : int
        Playhead position. During a stall this is the clock's target, which
        may be ahead of ``displayed_index``.
    speed_multiplier : float
        One of :data:`~thermalplayback.ALLOWED_SPEEDS`.
    mode : PlaybackMode
        Current state.
    direction : {"forward"}
        Playback direction; only forward playback is supported.
    accumulated_time : float
        Fractional progress (in frames) toward the next advance.
    displayed_index : int or None
        Index of the last frame handed to the render sink.
    loading : bool
        True while the target frame is being fetched and the previous frame
        is held on screen.
    scrub_target : int or None
        Pending seek target while scrubbing.
    resume_after_release : bool
        Whether ``release_scrub`` should resume playback.
    """

    current_index: int = 0
    speed_multiplier: float = 1.0
    mode: PlaybackMode = PlaybackMode.IDLE
    direction: Literal["forward"] = "forward"
    accumulated_time: float = 0.0
    displayed_index: int | None = None
    loading: bool = False
    scrub_target: int | None = None
    resume_after_release: bool = False


class PlaybackController:
    """Frame cache and playback controller for one time series.

    Parameters
    ----------
    source : FrameSource
        Asynchronous provider of metadata and frames.
    sink : RenderSink, optional
        Receives frames, load progress and terminal errors. Defaults to a
        sink that discards everything.
    config : PlaybackConfig, optional
        Cache, fetch and playback policy. Defaults to ``PlaybackConfig()``.

    Attributes
    ----------
    config : PlaybackConfig
        Policy in effect.
    events : EventEmitter
        ``state_changed`` (PlaybackMode), ``speed_changed`` (float) and
        ``scrub_position_changed`` (float) notifications for UI glue.
    store : FrameStore
        Resident frames. The controller only reads it.
    coordinator : FetchCoordinator
        The only writer of frames into ``store``.
    planner : PreloadPlanner or None
        Created once metadata is known.

    Examples
    --------
    >>> import asyncio
    >>> import numpy as np
    >>> from thermalplayback import ArrayFrameSource, PlaybackController
    >>> async def demo():
    ...     source = ArrayFrameSource(np.zeros((5, 4)), time_interval=15.0)
    ...     controller = PlaybackController(source)
    ...     await controller.initialize()
    ...     controller.play()
    ...     controller.tick(15_000)
    ...     index = controller.current_index
    ...     controller.close()
    ...     return index
    >>> asyncio.run(demo())
    1

    Notes
    -----
    All methods must be called from the event loop thread. ``tick`` and the
    other synchronous operations never block: frame fetches run as tasks and
    deliver their results through future callbacks.

    When a frame needed for display is not resident, the last shown frame
    stays on screen with ``loading=True`` while the clock keeps advancing.
    When the frame for the *current* target arrives it is shown at once;
    targets passed while waiting are never shown late.
    """

    def __init__(
        self,
        source: FrameSource,
        sink: RenderSink | None = None,
        config: PlaybackConfig | None = None,
    ) -> None:
        self.config = config if config is not None else PlaybackConfig()
        self.events = EventEmitter()
        self.store = FrameStore(self.config.resolved_capacity)
        self.coordinator = FetchCoordinator(source, self.store, self.config)
        self.coordinator.add_listener(self._on_ticket_settled)
        self.planner: PreloadPlanner | None = None

        self._source = source
        self._sink: RenderSink = sink if sink is not None else NullRenderSink()
        self._metadata: Metadata | None = None
        self._state = PlaybackState()
        self._displayed: Frame | None = None
        self._last_error: BaseException | None = None
        self._generation = 0
        self._initial_batch: list[int] = []
        self._initial_task: asyncio.Task[None] | None = None
        self._background_task: asyncio.Task[None] | None = None
        self._pinned_current: int | None = None
        self._pinned_scrub: int | None = None

        # Metrics
        self._frames_rendered = 0
        self._frames_skipped = 0

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def metadata(self) -> Metadata | None:
        return self._metadata

    @property
    def mode(self) -> PlaybackMode:
        return self._state.mode

    @property
    def state(self) -> PlaybackState:
        """Copy of the current playback state."""
        return dataclasses.replace(self._state)

    @property
    def current_index(self) -> int:
        return self._state.current_index

    @property
    def displayed_index(self) -> int | None:
        return self._state.displayed_index

    @property
    def displayed_frame(self) -> Frame | None:
        return self._displayed

    @property
    def speed(self) -> float:
        return self._state.speed_multiplier

    @property
    def is_playing(self) -> bool:
        return self._state.mode is PlaybackMode.PLAYING

    @property
    def is_loading(self) -> bool:
        """True while the displayed frame is held waiting for the target."""
        return self._state.loading

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    @property
    def frames_rendered(self) -> int:
        """Frames handed to the sink (interpolated frames excluded)."""
        return self._frames_rendered

    @property
    def frames_skipped(self) -> int:
        """Frames passed over by multi-frame advances."""
        return self._frames_skipped

    @property
    def progress(self) -> float:
        """Playhead position as a fraction of the series (0-1)."""
        if self._metadata is None or self._metadata.total_frames <= 1:
            return 0.0
        return self._state.current_index / self._metadata.last_index

    @property
    def load_progress(self) -> LoadProgress | None:
        """Residency report, as sent to ``on_progress``; None before metadata."""
        if self._metadata is None:
            return None
        loaded = len(self.store)
        return LoadProgress(
            loaded_count=loaded,
            total_count=self._metadata.total_frames,
            loading_count=len(self.coordinator.in_flight_indices()),
            is_ready_for_playback=loaded >= len(self._initial_batch),
        )

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict summary for UI glue and debugging."""
        meta = self._metadata
        last = meta.last_index if meta is not None else 0
        st = self._state
        return {
            "mode": st.mode.value,
            "current_index": st.current_index,
            "displayed_index": st.displayed_index,
            "total_frames": meta.total_frames if meta is not None else 0,
            "current_time": (
                st.current_index * meta.time_interval if meta is not None else 0.0
            ),
            "total_duration": meta.total_duration if meta is not None else 0.0,
            "speed": st.speed_multiplier,
            "available_speeds": list(ALLOWED_SPEEDS),
            "progress": self.progress,
            "loading": st.loading,
            "is_at_start": st.current_index == 0,
            "is_at_end": meta is not None and st.current_index >= last,
            "can_play": meta is not None
            and st.mode in (PlaybackMode.PAUSED, PlaybackMode.PLAYING)
            and st.current_index < last,
            "cache": self.store.stats(),
            "fetch": self.coordinator.stats(),
        }

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize_with_metadata(self, metadata: Metadata | Mapping[str, Any]) -> None:
        """Start loading a dataset: ``Idle -> Loading``.

        Any previously loaded dataset is dropped (cache cleared, fetches
        cancelled). The initial batch loads in a background task; await
        :meth:`wait_ready` to block until it settles.

        Parameters
        ----------
        metadata : Metadata or Mapping
            Dataset description. A mapping is validated with
            :meth:`Metadata.from_dict`.

        Raises
        ------
        InvalidMetadataError
            If the description is unusable; the controller enters ``Error``.
        RuntimeError
            If called outside a running event loop.
        """
        loop = asyncio.get_running_loop()
        self._teardown()
        self._generation += 1
        previous = self._state
        self._state = PlaybackState(
            mode=previous.mode, speed_multiplier=previous.speed_multiplier
        )
        self._last_error = None

        try:
            if not isinstance(metadata, Metadata):
                metadata = Metadata.from_dict(metadata)
        except InvalidMetadataError as exc:
            self._metadata = None
            self._last_error = exc
            self._set_mode(PlaybackMode.ERROR)
            raise

        self._metadata = metadata
        self.planner = PreloadPlanner(metadata, self.store, self.coordinator, self.config)
        self._set_current(0)
        self._set_mode(PlaybackMode.LOADING)

        self._initial_batch = self.planner.plan_initial_batch()
        logger.info(
            f"Loading {metadata.total_frames} frames "
            f"(initial batch {len(self._initial_batch)}, "
            f"cache capacity {self.store.capacity})"
        )
        self._initial_task = loop.create_task(
            self._load_initial_batch(self._generation), name="initial-batch"
        )

    async def initialize(self, source: FrameSource | None = None) -> PlaybackMode:
        """Fetch metadata from the source and wait for the initial batch.

        Parameters
        ----------
        source : FrameSource, optional
            Switch to a different frame source first. The cache and all
            in-flight fetches of the previous source are dropped.

        Returns
        -------
        PlaybackMode
            ``PAUSED`` on success (or whatever mode user actions moved the
            controller to meanwhile), ``ERROR`` on a terminal load failure.

        Raises
        ------
        FrameSourceError
            If the metadata request fails; the controller enters ``Error``.
        InvalidMetadataError
            If the metadata is unusable.
        """
        if source is not None and source is not self._source:
            self._teardown()
            self._source = source
            self.coordinator = FetchCoordinator(source, self.store, self.config)
            self.coordinator.add_listener(self._on_ticket_settled)
        try:
            metadata = await self._source.fetch_metadata()
        except Exception as exc:
            self._teardown()
            self._generation += 1
            self._metadata = None
            self.planner = None
            self._initial_batch = []
            self._state = PlaybackState(
                mode=self._state.mode, speed_multiplier=self._state.speed_multiplier
            )
            self._last_error = exc
            self._set_mode(PlaybackMode.ERROR)
            logger.error(f"Failed to fetch metadata: {exc}")
            raise
        self.initialize_with_metadata(metadata)
        return await self.wait_ready()

    async def reinitialize(self) -> PlaybackMode:
        """Reload the dataset from scratch; the way out of ``Error``."""
        logger.info("Reinitializing playback")
        return await self.initialize()

    async def wait_ready(self) -> PlaybackMode:
        """Wait until the initial batch has settled and return the mode."""
        task = self._initial_task
        if task is not None:
            await asyncio.wait({task})
        return self._state.mode

    async def wait_background_loading(self) -> None:
        """Wait for the background loader (if any) to stop."""
        await self.wait_ready()
        task = self._background_task
        if task is not None:
            await asyncio.wait({task})

    async def _load_initial_batch(self, generation: int) -> None:
        waiters = [self.coordinator.request(idx) for idx in self._initial_batch]
        self._emit_progress()
        results = await asyncio.gather(*waiters, return_exceptions=True)
        if generation != self._generation or self._state.mode is PlaybackMode.ERROR:
            return

        for result in results:
            if isinstance(result, FrameLoadError):
                self._enter_error(result)
                return
            if isinstance(result, BaseException) and not isinstance(
                result, asyncio.CancelledError
            ):
                raise result

        self._initial_task = None
        logger.info(f"Initial batch of {len(self._initial_batch)} frame(s) loaded")
        if self._state.mode is PlaybackMode.LOADING:
            self._set_mode(PlaybackMode.PAUSED)
            self._request_display(self._state.current_index)

        assert self._metadata is not None
        if self.config.background_loading and len(self._initial_batch) < (
            self._metadata.total_frames
        ):
            self._background_task = asyncio.get_running_loop().create_task(
                self._load_background(generation), name="background-loading"
            )

    async def _load_background(self, generation: int) -> None:
        planner = self.planner
        assert planner is not None

        while generation == self._generation:
            if self._state.mode is PlaybackMode.ERROR:
                return
            held = planner.background_held()
            if held:
                # The playhead moved; its window loads first
                await self.coordinator.wait_settled(held)
                continue
            if len(self.store) >= self.store.capacity:
                logger.info(
                    f"Background loading stopped: cache full ({len(self.store)} frames)"
                )
                return

            in_flight = self.coordinator.in_flight_indices()
            room = self.store.capacity - len(self.store) - len(in_flight)
            if room <= 0:
                await self.coordinator.wait_settled(in_flight)
                continue
            batch = planner.next_background_batch(room)
            if not batch:
                if in_flight:
                    await self.coordinator.wait_settled(in_flight)
                    continue
                logger.info("Background loading complete")
                return

            for idx in batch:
                waiter = self.coordinator.request(idx)
                waiter.add_done_callback(
                    lambda fut, idx=idx: _consume_preload_result(idx, fut)
                )
            await self.coordinator.wait_settled(batch)

    # ------------------------------------------------------------------
    # Transport controls
    # ------------------------------------------------------------------

    def play(self) -> None:
        """Start advancing: ``Paused -> Playing``. No-op when already playing.

        While still ``Loading``, playback may start early once at least one
        frame is resident.

        Raises
        ------
        NotReadyError
            If no dataset is loaded, nothing is resident yet, the controller
            is scrubbing, or it is in ``Error``.
        """
        mode = self._state.mode
        if mode is PlaybackMode.PLAYING:
            return
        if mode is PlaybackMode.LOADING:
            if len(self.store) < 1:
                raise NotReadyError("Cannot play: no frames are loaded yet.")
        elif mode is not PlaybackMode.PAUSED:
            raise NotReadyError(f"Cannot play while {mode.value}.")

        assert self.planner is not None
        self._state.accumulated_time = 0.0
        self._set_mode(PlaybackMode.PLAYING)
        if self._state.displayed_index != self._state.current_index:
            self._request_display(self._state.current_index)
        self.planner.ensure_window(self._state.current_index, self._state.speed_multiplier)

    def pause(self) -> None:
        """Stop advancing: ``Playing -> Paused``. The shown frame is kept."""
        if self._state.mode is PlaybackMode.PLAYING:
            self._set_mode(PlaybackMode.PAUSED)

    def toggle(self) -> None:
        if self._state.mode is PlaybackMode.PLAYING:
            self.pause()
        else:
            self.play()

    def set_speed(self, multiplier: float) -> None:
        """Set the playback speed; takes effect on the next :meth:`tick`.

        Raises
        ------
        InvalidSpeedError
            If ``multiplier`` is not in :data:`ALLOWED_SPEEDS`.
        """
        if isinstance(multiplier, bool) or not isinstance(multiplier, numbers.Real):
            raise InvalidSpeedError(multiplier, ALLOWED_SPEEDS)
        value = float(multiplier)
        if value not in ALLOWED_SPEEDS:
            raise InvalidSpeedError(multiplier, ALLOWED_SPEEDS)
        if value == self._state.speed_multiplier:
            return
        self._state.speed_multiplier = value
        logger.info(f"Playback speed set to {value:g}x")
        self.events.emit(SPEED_CHANGED, value)
        if self.planner is not None and self._state.mode in (
            PlaybackMode.PLAYING,
            PlaybackMode.PAUSED,
        ):
            self.planner.ensure_window(self._state.current_index, value)

    @timed
    def tick(self, elapsed_real_ms: float) -> int:
        """Advance the virtual clock by ``elapsed_real_ms`` of wall time.

        Call once per render cycle. Does nothing unless ``Playing``.

        Parameters
        ----------
        elapsed_real_ms : float
            Wall time since the previous tick, in milliseconds.

        Returns
        -------
        int
            The playhead index after the tick.

        Raises
        ------
        ValueError
            If ``elapsed_real_ms`` is negative or not finite.
        """
        st = self._state
        if st.mode is not PlaybackMode.PLAYING:
            return st.current_index
        if not math.isfinite(elapsed_real_ms) or elapsed_real_ms < 0:
            raise ValueError(
                f"elapsed_real_ms must be a finite, non-negative number "
                f"(got {elapsed_real_ms})."
            )
        assert self._metadata is not None and self.planner is not None
        last = self._metadata.last_index

        if st.current_index >= last:
            self._finish_playback()
            return st.current_index

        st.accumulated_time += (
            elapsed_real_ms * st.speed_multiplier / (self._metadata.time_interval * 1000)
        )
        advance = 0
        while (
            st.accumulated_time >= 1
            and advance < self.config.max_frame_skip_per_tick
            and st.current_index + advance < last
        ):
            advance += 1
            st.accumulated_time -= 1
        if st.accumulated_time >= 1:
            # Frame-skip policy: drop whole frames beyond the per-tick cap
            st.accumulated_time -= math.floor(st.accumulated_time)

        if advance:
            self._frames_skipped += advance - 1
            self._set_current(st.current_index + advance)
            self._request_display(st.current_index)
            self.planner.rewindow(
                st.current_index, st.speed_multiplier, keep=self._loading_keep()
            )
        elif self.config.interpolate:
            self._show_interpolated()

        if st.current_index >= last:
            self._finish_playback()
        return st.current_index

    def _finish_playback(self) -> None:
        self._state.accumulated_time = 0.0
        logger.info("Reached the last frame; pausing")
        self._set_mode(PlaybackMode.PAUSED)

    # ------------------------------------------------------------------
    # Scrubbing and seeking
    # ------------------------------------------------------------------

    def snap_to_frame(self, value: float) -> int:
        """Round a continuous timeline position to the nearest valid index.

        Halves round up. The result is clamped to ``[0, total_frames - 1]``.

        Raises
        ------
        NotReadyError
            If no metadata is loaded.
        ValueError
            If ``value`` is NaN.
        """
        meta = self._require_metadata()
        if math.isnan(value):
            raise ValueError("Cannot snap NaN to a frame index.")
        if math.isinf(value):
            return 0 if value < 0 else meta.last_index
        return self._clamp(math.floor(value + 0.5))

    def scrub(self, target_index: int) -> int:
        """Seek interactively: any state except ``Error`` -> ``Scrubbing``.

        Playback is paused first if it was running. The target frame is
        requested ahead of ordinary preloading; until it arrives the last
        frame stays on screen with ``loading=True``.

        Parameters
        ----------
        target_index : int
            Desired frame; clamped to the valid range.

        Returns
        -------
        int
            The clamped target.

        Raises
        ------
        NotReadyError
            If no dataset is loaded or the controller is in ``Error``.
        """
        if isinstance(target_index, bool) or not isinstance(
            target_index, numbers.Integral
        ):
            raise TypeError(
                f"target_index must be an integer (got {type(target_index).__name__}); "
                "use scrub_to_position() for continuous values."
            )
        target = self._clamp(int(target_index))
        return self._scrub(target, float(target))

    def scrub_to_position(self, value: float) -> int:
        """Scrub to a continuous timeline position (e.g. a slider value)."""
        target = self.snap_to_frame(value)
        return self._scrub(target, float(value))

    def _scrub(self, target: int, position: float) -> int:
        mode = self._state.mode
        if mode in (PlaybackMode.IDLE, PlaybackMode.ERROR):
            raise NotReadyError(f"Cannot scrub while {mode.value}.")
        assert self.planner is not None
        st = self._state

        if mode is PlaybackMode.PLAYING:
            self._set_mode(PlaybackMode.PAUSED)
            st.resume_after_release = self.config.resume_after_scrub
        elif mode is not PlaybackMode.SCRUBBING:
            st.resume_after_release = False

        self._set_scrub_target(target)
        self._set_mode(PlaybackMode.SCRUBBING)
        self.events.emit(SCRUB_POSITION_CHANGED, position)

        self._request_display(target)
        self.planner.rewindow(target, st.speed_multiplier, keep=self._loading_keep())
        return target

    def release_scrub(self) -> int:
        """Commit the scrub: ``Scrubbing -> Paused`` at the target index.

        Resumes playback if the scrub interrupted it and
        ``config.resume_after_scrub`` is set. No-op outside ``Scrubbing``.

        Returns
        -------
        int
            The new playhead index.
        """
        st = self._state
        if st.mode is not PlaybackMode.SCRUBBING:
            logger.debug(f"release_scrub ignored while {st.mode.value}")
            return st.current_index
        assert self.planner is not None and st.scrub_target is not None

        target = st.scrub_target
        self._set_scrub_target(None)
        self._set_current(target)
        st.accumulated_time = 0.0
        self._set_mode(PlaybackMode.PAUSED)
        self.planner.rewindow(target, st.speed_multiplier, keep=self._loading_keep())

        if st.resume_after_release:
            st.resume_after_release = False
            self.play()
        return target

    def seek(self, index: int) -> int:
        """Jump to ``index`` (clamped) via ``scrub`` + ``release_scrub``."""
        self.scrub(index)
        return self.release_scrub()

    def seek_to_time(self, seconds: float) -> int:
        """Jump to the frame nearest to simulation time ``seconds``."""
        meta = self._require_metadata()
        return self.seek(self.snap_to_frame(seconds / meta.time_interval))

    def step_forward(self) -> int:
        return self.seek(self._state.current_index + 1)

    def step_backward(self) -> int:
        return self.seek(self._state.current_index - 1)

    def reset(self) -> int:
        """Pause and return to the first frame."""
        self.pause()
        return self.seek(0)

    # ------------------------------------------------------------------
    # Recovery, export and teardown
    # ------------------------------------------------------------------

    def retry_failed(self) -> list[int]:
        """Request again every frame whose last fetch failed terminally.

        Raises
        ------
        NotReadyError
            In ``Error`` (use :meth:`reinitialize`) or before initialization.
        """
        mode = self._state.mode
        if mode in (PlaybackMode.IDLE, PlaybackMode.ERROR):
            raise NotReadyError(
                f"Cannot retry frames while {mode.value}; reinitialize instead."
            )
        failed = self.coordinator.failed_indices
        for idx in failed:
            self._retry(idx)
        if failed:
            logger.info(f"Retrying {len(failed)} failed frame(s)")
        return failed

    def retry_frame(self, index: int) -> bool:
        """Request one frame again, whether or not its last fetch failed.

        Returns
        -------
        bool
            False if the frame is already resident or in flight.

        Raises
        ------
        NotReadyError
            In ``Error`` (use :meth:`reinitialize`) or before initialization.
        IndexError
            If ``index`` is outside the series.
        """
        mode = self._state.mode
        if mode in (PlaybackMode.IDLE, PlaybackMode.ERROR):
            raise NotReadyError(
                f"Cannot retry frames while {mode.value}; reinitialize instead."
            )
        meta = self._require_metadata()
        if not meta.is_valid_index(index):
            raise IndexError(f"Frame {index} is out of range [0, {meta.last_index}].")
        if self.store.has(index) or self.coordinator.is_loading(index):
            return False
        logger.info(f"Retrying frame {index}")
        self._retry(index)
        return True

    def _retry(self, index: int) -> None:
        waiter = self.coordinator.request(index)
        waiter.add_done_callback(lambda fut: _consume_preload_result(index, fut))
        if index == self._display_target() and self._state.displayed_index != index:
            self._request_display(index)

    def capture(self) -> Any:
        """Invoke the sink's ``capture(frame)`` export hook on the shown frame.

        Returns
        -------
        Any
            Whatever the hook returns, or None if the sink has no hook.

        Raises
        ------
        NotReadyError
            If no frame has been displayed yet.
        """
        if self._displayed is None:
            raise NotReadyError("Nothing to capture: no frame has been displayed.")
        hook = getattr(self._sink, "capture", None)
        if not callable(hook):
            return None
        return hook(self._displayed)

    def close(self) -> None:
        """Cancel all background work, drop the cache and return to ``Idle``."""
        self._teardown()
        self._generation += 1
        self._metadata = None
        self.planner = None
        self._state = PlaybackState(mode=self._state.mode)
        self._set_mode(PlaybackMode.IDLE)

    def _teardown(self) -> None:
        for task in (self._initial_task, self._background_task):
            if task is not None and not task.done():
                task.cancel()
        self._initial_task = None
        self._background_task = None
        self.coordinator.close()
        self.store.clear()
        self._displayed = None
        self._pinned_current = None
        self._pinned_scrub = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_metadata(self) -> Metadata:
        if self._metadata is None:
            raise NotReadyError("No dataset is loaded; call initialize() first.")
        return self._metadata

    def _clamp(self, index: int) -> int:
        meta = self._require_metadata()
        return max(0, min(index, meta.last_index))

    def _loading_keep(self) -> tuple[int, ...]:
        # Initial-batch fetches must survive a scrub issued during loading
        if self._initial_task is not None:
            return tuple(self._initial_batch)
        return ()

    def _set_mode(self, mode: PlaybackMode) -> None:
        old = self._state.mode
        if old is mode:
            return
        self._state.mode = mode
        logger.info(f"Playback state {old.value} -> {mode.value}")
        self.events.emit(STATE_CHANGED, mode)

    def _set_current(self, index: int) -> None:
        self._state.current_index = index
        if self._pinned_current != index:
            if self._pinned_current is not None:
                self.store.unpin(self._pinned_current)
            self.store.pin(index)
            self._pinned_current = index

    def _set_scrub_target(self, index: int | None) -> None:
        self._state.scrub_target = index
        if self._pinned_scrub == index:
            return
        if self._pinned_scrub is not None:
            self.store.unpin(self._pinned_scrub)
        if index is not None:
            self.store.pin(index)
        self._pinned_scrub = index

    def _display_target(self) -> int | None:
        st = self._state
        if st.mode is PlaybackMode.SCRUBBING:
            return st.scrub_target
        if st.mode in (PlaybackMode.PLAYING, PlaybackMode.PAUSED):
            return st.current_index
        return None

    def _show(self, frame: Frame) -> None:
        self._displayed = frame
        self._state.displayed_index = frame.index
        self._state.loading = False
        self._frames_rendered += 1
        self._sink.on_frame_ready(frame, FrameDisplayInfo(loading=False))

    def _request_display(self, index: int) -> None:
        frame = self.store.get(index)
        if frame is not None:
            self._show(frame)
            return

        if not self._state.loading:
            self._state.loading = True
            if self._displayed is not None:
                self._sink.on_frame_ready(
                    self._displayed, FrameDisplayInfo(loading=True)
                )
        generation = self._generation
        waiter = self.coordinator.request(index)
        waiter.add_done_callback(
            lambda fut: self._on_display_frame(index, generation, fut)
        )

    def _on_display_frame(
        self, index: int, generation: int, waiter: asyncio.Future[Frame]
    ) -> None:
        if waiter.cancelled() or generation != self._generation:
            return
        error = waiter.exception()
        target = self._display_target()
        if error is not None:
            required = index == self._state.current_index and self._state.mode in (
                PlaybackMode.PLAYING,
                PlaybackMode.LOADING,
            )
            if required and isinstance(error, FrameLoadError):
                self._enter_error(error)
            else:
                logger.warning(f"Frame {index} could not be displayed: {error}")
                if index == target:
                    self._state.loading = False
            return
        if index != target:
            # The playhead moved on while waiting; never show stale targets
            return
        self._show(waiter.result())

    def _show_interpolated(self) -> None:
        st = self._state
        if st.loading or st.displayed_index != st.current_index:
            return
        alpha = st.accumulated_time
        if alpha <= 0:
            return
        current = self.store.peek(st.current_index)
        upcoming = self.store.peek(st.current_index + 1)
        if current is None or upcoming is None:
            return
        values = (1.0 - alpha) * current.values + alpha * upcoming.values
        blended = Frame(
            index=current.index,
            time=(1.0 - alpha) * current.time + alpha * upcoming.time,
            values=values,
            temp_range=(float(np.min(values)), float(np.max(values)))
            if values.size
            else None,
        )
        self._sink.on_frame_ready(blended, FrameDisplayInfo(is_interpolated=True))

    def _enter_error(self, error: FrameLoadError) -> None:
        if self._state.mode is PlaybackMode.ERROR:
            return
        self._last_error = error
        if self._background_task is not None and not self._background_task.done():
            self._background_task.cancel()
        self._background_task = None
        self.coordinator.cancel_outside(())
        self._state.loading = False
        self._set_mode(PlaybackMode.ERROR)
        self._sink.on_error(error)

    def _emit_progress(self) -> None:
        report = self.load_progress
        if report is not None:
            self._sink.on_progress(report)

    def _on_ticket_settled(self, index: int, error: FrameLoadError | None) -> None:
        self._emit_progress()


__all__ = ["PlaybackController", "PlaybackMode", "PlaybackState"]
