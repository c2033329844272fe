"""Frame cache and playback controller for simulated temperature fields.

**thermalplayback** plays back a precomputed time series of 2D temperature
grids smoothly while loading frames asynchronously from a slow backend. It
keeps a bounded LRU cache of frames, preloads a speed-dependent window ahead
of the playhead, deduplicates and retries fetches, and drives a playback
state machine (load, play, pause, scrub, change speed) from a wall-clock tick.

Core Classes (Top-Level Exports)
--------------------------------
PlaybackController : Playback state machine
    Owns the cache, fetch coordinator and preload planner for one dataset.
PlaybackConfig : Cache, fetch and playback policy
    Frozen dataclass; ``PlaybackConfig.from_env()`` reads
    ``THERMALPLAYBACK_*`` environment variables.
FrameStore : Bounded LRU frame cache
FetchCoordinator : Deduplicated, retrying fetches
PreloadPlanner : Look-ahead window and initial batch planning
ArrayFrameSource : In-memory frame source for tests and demos
Frame, Metadata : Validated value types

Collaborators
-------------
The application supplies a :class:`FrameSource` (``fetch_metadata`` and
``fetch_frame`` coroutines) and optionally a :class:`RenderSink`
(``on_frame_ready``, ``on_progress``, ``on_error``).

Examples
--------
Play a small series to the end::

    >>> import asyncio
    >>> import numpy as np
    >>> from thermalplayback import ArrayFrameSource, PlaybackController
    >>> from thermalplayback.driver import run_playback
    >>> async def main():
    ...     source = ArrayFrameSource(np.random.rand(50, 100), time_interval=0.01)
    ...     controller = PlaybackController(source)
    ...     await controller.initialize()
    ...     controller.set_speed(2.0)
    ...     controller.play()
    ...     await run_playback(controller)
    ...     return controller.current_index
    >>> asyncio.run(main())  # doctest: +SKIP
    49

Logging
-------
All modules log to children of the ``thermalplayback`` logger. Set
``THERMALPLAYBACK_TIMING=1`` to log per-operation timings from the
``thermalplayback.timing`` logger at DEBUG level.
"""

import logging

from thermalplayback._types import (
    ALLOWED_SPEEDS,
    Frame,
    FrameDisplayInfo,
    LoadProgress,
    Metadata,
)
from thermalplayback.config import PlaybackConfig
from thermalplayback.controller import PlaybackController, PlaybackMode, PlaybackState
from thermalplayback.errors import (
    FetchTimeoutError,
    FrameLoadError,
    FrameSourceError,
    IndexOutOfRangeError,
    InvalidMetadataError,
    InvalidSpeedError,
    NotReadyError,
    PlaybackError,
    SourceUnavailableError,
)
from thermalplayback.fetch import FetchCoordinator
from thermalplayback.planner import PreloadPlanner
from thermalplayback.protocols import FrameSource, NullRenderSink, RenderSink
from thermalplayback.sources import ArrayFrameSource
from thermalplayback.store import FrameStore

# Add NullHandler to prevent "No handler found" warnings if user doesn't configure logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "ALLOWED_SPEEDS",
    "ArrayFrameSource",
    "FetchCoordinator",
    "FetchTimeoutError",
    "Frame",
    "FrameDisplayInfo",
    "FrameLoadError",
    "FrameSource",
    "FrameSourceError",
    "FrameStore",
    "IndexOutOfRangeError",
    "InvalidMetadataError",
    "InvalidSpeedError",
    "LoadProgress",
    "Metadata",
    "NotReadyError",
    "NullRenderSink",
    "PlaybackConfig",
    "PlaybackController",
    "PlaybackError",
    "PlaybackMode",
    "PlaybackState",
    "PreloadPlanner",
    "RenderSink",
    "SourceUnavailableError",
]
