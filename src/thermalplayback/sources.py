"""In-memory frame source backed by a numpy array.

:class:`ArrayFrameSource` serves precomputed fields from a
``(n_frames, n_nodes)`` array (memory-mapped arrays work too, since only
one row is read per fetch). Latency and failures can be injected, which makes
it the standard collaborator for tests, demos and benchmarks.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import numpy as np
from numpy.typing import ArrayLike, NDArray

from thermalplayback._types import Frame, Metadata
from thermalplayback.errors import IndexOutOfRangeError, SourceUnavailableError


class ArrayFrameSource:
    """Serve frames from a 2D array of field values.

    Parameters
    ----------
    fields : array_like of shape (n_frames, n_nodes)
        Field values per frame. A 3D array ``(n_frames, ny, nx)`` is
        accepted and flattened per frame.
    time_interval : float
        Seconds between frames.
    mesh_dimensions : tuple of int, optional
        Reported in the metadata. Defaults to the per-frame grid shape for
        3D input, else ``(n_nodes, 1)``.
    latency_s : float or callable, default=0.0
        Delay per ``fetch_frame`` call. A callable receives the index and
        returns the delay, allowing variable latency.
    failures : dict[int, int], optional
        Number of times ``fetch_frame(index)`` should raise
        :class:`SourceUnavailableError` before succeeding. Use a large value
        for a permanently failing index.

    Attributes
    ----------
    fetch_counts : dict[int, int]
        Number of ``fetch_frame`` calls per index (including failed ones).
    metadata_calls : int
        Number of ``fetch_metadata`` calls.

    Examples
    --------
    >>> import asyncio
    >>> source = ArrayFrameSource(np.zeros((5, 4)), time_interval=15.0)
    >>> asyncio.run(source.fetch_metadata()).total_frames
    5
    >>> asyncio.run(source.fetch_frame(2)).time
    30.0
    """

    def __init__(
        self,
        fields: ArrayLike,
        time_interval: float,
        mesh_dimensions: tuple[int, ...] | None = None,
        latency_s: float | Callable[[int], float] = 0.0,
        failures: dict[int, int] | None = None,
    ) -> None:
        arr = np.asarray(fields, dtype=np.float64)
        if arr.ndim < 2:
            raise ValueError(
                f"fields must have shape (n_frames, n_nodes) (got shape {arr.shape})."
            )
        if mesh_dimensions is None:
            mesh_dimensions = arr.shape[1:] if arr.ndim > 2 else (arr.shape[1], 1)
        self._fields: NDArray[np.float64] = arr.reshape(arr.shape[0], -1)
        self._metadata = Metadata(
            total_frames=arr.shape[0],
            time_interval=time_interval,
            mesh_dimensions=tuple(mesh_dimensions),
            global_temp_range=(
                (float(np.nanmin(arr)), float(np.nanmax(arr))) if arr.size else None
            ),
        )
        self._latency = latency_s
        self._remaining_failures: dict[int, int] = dict(failures or {})
        self.fetch_counts: dict[int, int] = {}
        self.metadata_calls = 0
        self.available = True

    @property
    def metadata(self) -> Metadata:
        return self._metadata

    def fail_next(self, index: int, times: int = 1) -> None:
        """Make the next ``times`` fetches of ``index`` raise."""
        self._remaining_failures[index] = self._remaining_failures.get(index, 0) + times

    async def fetch_metadata(self) -> Metadata:
        self.metadata_calls += 1
        if not self.available:
            raise SourceUnavailableError("Frame source is offline.")
        return self._metadata

    async def fetch_frame(self, index: int) -> Frame:
        self.fetch_counts[index] = self.fetch_counts.get(index, 0) + 1
        delay = self._latency(index) if callable(self._latency) else self._latency
        if delay > 0:
            await asyncio.sleep(delay)

        if not self.available:
            raise SourceUnavailableError("Frame source is offline.")
        if not self._metadata.is_valid_index(index):
            raise IndexOutOfRangeError(index, self._metadata.total_frames)
        if self._remaining_failures.get(index, 0) > 0:
            self._remaining_failures[index] -= 1
            raise SourceUnavailableError(f"Injected failure for frame {index}.")

        values = self._fields[index]
        return Frame(
            index=index,
            time=index * self._metadata.time_interval,
            values=values,
            temp_range=(float(np.nanmin(values)), float(np.nanmax(values)))
            if values.size
            else None,
        )

    @property
    def total_fetches(self) -> int:
        return sum(self.fetch_counts.values())


__all__ = ["ArrayFrameSource"]
