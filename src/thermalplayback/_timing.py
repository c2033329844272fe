"""Opt-in timing instrumentation for fetch and tick paths.

Enable by setting the environment variable::

    THERMALPLAYBACK_TIMING=1 python your_script.py

Timings are written to the ``thermalplayback.timing`` logger at DEBUG level,
so they also need a handler, e.g. ``logging.basicConfig(level=logging.DEBUG)``.
When the variable is unset both helpers reduce to near no-ops.
"""

from __future__ import annotations

import contextlib
import logging
import os
import time
from collections.abc import Callable, Generator
from functools import wraps
from typing import ParamSpec, TypeVar

_TIMING_ENABLED = bool(os.environ.get("THERMALPLAYBACK_TIMING"))

logger = logging.getLogger("thermalplayback.timing")

P = ParamSpec("P")
T = TypeVar("T")


@contextlib.contextmanager
def timing(name: str) -> Generator[None, None, None]:
    """Context manager that logs the wall time spent in its block.

    Parameters
    ----------
    name : str
        Label for this block in the log output.

    Examples
    --------
    >>> with timing("fetch_frame[3]"):
    ...     pass
    """
    if not _TIMING_ENABLED:
        yield
        return

    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"[TIMING] {name}: {elapsed_ms:.2f} ms")


def timed(func: Callable[P, T]) -> Callable[P, T]:
    """Decorator form of :func:`timing`, labelled with the function's qualname."""
    if not _TIMING_ENABLED:
        return func

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        with timing(func.__qualname__):
            return func(*args, **kwargs)

    return wrapper


def is_timing_enabled() -> bool:
    return _TIMING_ENABLED


__all__ = ["is_timing_enabled", "timed", "timing"]
