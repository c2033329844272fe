"""Render-loop driver for :class:`~thermalplayback.PlaybackController`.

Applications with their own render loop call ``controller.tick`` from it
directly. :func:`run_playback` is the stand-alone equivalent: it measures
wall time between iterations and ticks the controller until playback stops.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from thermalplayback.controller import PlaybackController, PlaybackMode

logger = logging.getLogger(__name__)


async def run_playback(
    controller: PlaybackController,
    interval_ms: float = 16.0,
    clock: Callable[[], float] = time.perf_counter,
) -> int:
    """Tick ``controller`` every ``interval_ms`` while it is playing.

    Parameters
    ----------
    controller : PlaybackController
        Controller to drive. Returns immediately unless it is ``Playing``.
    interval_ms : float, default=16.0
        Target delay between ticks (about 60 Hz). Actual elapsed time is
        measured with ``clock``, so a slow loop still plays at the right
        speed (up to the controller's frame-skip cap).
    clock : callable, default=time.perf_counter
        Monotonic clock returning seconds.

    Returns
    -------
    int
        Number of ticks issued.

    Raises
    ------
    ValueError
        If ``interval_ms`` is negative.
    """
    if interval_ms < 0:
        raise ValueError(f"interval_ms must be non-negative (got {interval_ms}).")

    ticks = 0
    last = clock()
    logger.debug(f"playback loop started (interval {interval_ms:g} ms)")
    while controller.mode is PlaybackMode.PLAYING:
        await asyncio.sleep(interval_ms / 1000)
        now = clock()
        controller.tick(max(0.0, (now - last) * 1000))
        last = now
        ticks += 1
    logger.debug(
        f"playback loop stopped after {ticks} tick(s) in state {controller.mode.value}"
    )
    return ticks


__all__ = ["run_playback"]
