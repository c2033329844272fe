"""Value types shared across the frame cache and playback controller.

The loose dictionaries produced by the simulation backend are converted into
validated, immutable dataclasses at the source boundary, so the rest of the
package never performs ad-hoc key lookups.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import ArrayLike, NDArray

from thermalplayback.errors import InvalidMetadataError

ALLOWED_SPEEDS: tuple[float, ...] = (0.5, 1.0, 2.0, 5.0, 10.0)
"""Playback speed multipliers accepted by ``PlaybackController.set_speed``."""


def _as_readonly_values(values: ArrayLike) -> NDArray[np.float64]:
    arr = np.array(values, dtype=np.float64).ravel()
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class Frame:
    """One time step of the scalar (temperature) field.

    Parameters
    ----------
    index : int
        Dense 0-based position of the frame in the time series.
    time : float
        Simulation time of the frame in seconds.
    values : array_like
        Field values, one per mesh node. Stored as a flat, read-only
        float64 array.
    temp_range : tuple of float, optional
        ``(min, max)`` of ``values``. Computed when a frame is built with
        :meth:`from_grid` or :meth:`from_dict`.

    Notes
    -----
    Frames are lent to the render sink by reference. Because ``values`` is
    read-only, a sink that needs to keep or modify the data past the current
    event must take a copy with :meth:`copy_values`.

    Examples
    --------
    >>> frame = Frame.from_grid(0, 0.0, [[300.0, 310.0], [305.0, 320.0]])
    >>> frame.values.shape
    (4,)
    >>> frame.temp_range
    (300.0, 320.0)
    """

    index: int
    time: float
    values: NDArray[np.float64] = field(repr=False)
    temp_range: tuple[float, float] | None = None

    def __post_init__(self) -> None:
        if self.index < 0:
            raise ValueError(f"Frame index must be non-negative (got {self.index}).")
        object.__setattr__(self, "index", int(self.index))
        object.__setattr__(self, "time", float(self.time))
        object.__setattr__(self, "values", _as_readonly_values(self.values))
        if self.temp_range is not None:
            lo, hi = self.temp_range
            object.__setattr__(self, "temp_range", (float(lo), float(hi)))

    @classmethod
    def from_grid(cls, index: int, time: float, grid: ArrayLike) -> Frame:
        """Build a frame from a 2D grid, flattening it row-major."""
        values = np.asarray(grid, dtype=np.float64)
        temp_range = None
        if values.size:
            temp_range = (float(np.nanmin(values)), float(np.nanmax(values)))
        return cls(index=index, time=time, values=values, temp_range=temp_range)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Frame:
        """Build a frame from a backend time-step payload.

        Parameters
        ----------
        payload : Mapping
            Must contain ``step_index``, ``time`` and ``temperature_grid``
            (a ``[row][col]`` nested sequence).

        Raises
        ------
        ValueError
            If a required key is missing.
        """
        missing = {"step_index", "time", "temperature_grid"} - set(payload)
        if missing:
            raise ValueError(
                f"Time-step payload is missing required keys: {sorted(missing)}"
            )
        return cls.from_grid(
            int(payload["step_index"]),
            float(payload["time"]),
            payload["temperature_grid"],
        )

    @property
    def n_values(self) -> int:
        return int(self.values.shape[0])

    def copy_values(self) -> NDArray[np.float64]:
        """Return a writable copy of the field values."""
        return self.values.copy()


@dataclass(frozen=True)
class Metadata:
    """Immutable description of a precomputed time series.

    Parameters
    ----------
    total_frames : int
        Number of frames in the series. Must be positive.
    time_interval : float
        Simulation seconds between consecutive frames. Must be positive.
    mesh_dimensions : tuple of int, default=(0, 0)
        Mesh node counts along each axis (e.g. ``(nr, nz)``).
    global_temp_range : tuple of float, optional
        ``(min, max)`` of the field across all frames.

    Raises
    ------
    InvalidMetadataError
        If ``total_frames <= 0``, ``time_interval <= 0`` or the temperature
        range is inverted.
    """

    total_frames: int
    time_interval: float
    mesh_dimensions: tuple[int, ...] = (0, 0)
    global_temp_range: tuple[float, float] | None = None

    def __post_init__(self) -> None:
        if self.total_frames <= 0:
            raise InvalidMetadataError(
                f"total_frames must be positive (got {self.total_frames})."
            )
        if not math.isfinite(self.time_interval) or self.time_interval <= 0:
            raise InvalidMetadataError(
                f"time_interval must be a positive, finite number of seconds "
                f"(got {self.time_interval})."
            )
        object.__setattr__(self, "total_frames", int(self.total_frames))
        object.__setattr__(self, "time_interval", float(self.time_interval))
        object.__setattr__(
            self, "mesh_dimensions", tuple(int(d) for d in self.mesh_dimensions)
        )
        if self.global_temp_range is not None:
            lo, hi = (float(v) for v in self.global_temp_range)
            if lo > hi:
                raise InvalidMetadataError(
                    f"global_temp_range minimum exceeds maximum ({lo} > {hi})."
                )
            object.__setattr__(self, "global_temp_range", (lo, hi))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Metadata:
        """Build metadata from a backend animation-metadata payload.

        Recognised keys are ``total_time_steps``, ``time_interval``,
        ``mesh_dimensions`` and ``temperature_range``. Other keys (such as
        ``simulation_duration``) are ignored.
        """
        missing = {"total_time_steps", "time_interval"} - set(payload)
        if missing:
            raise InvalidMetadataError(
                f"Metadata payload is missing required keys: {sorted(missing)}"
            )
        temp_range = payload.get("temperature_range")
        return cls(
            total_frames=int(payload["total_time_steps"]),
            time_interval=float(payload["time_interval"]),
            mesh_dimensions=tuple(payload.get("mesh_dimensions", (0, 0))),
            global_temp_range=tuple(temp_range) if temp_range is not None else None,
        )

    @property
    def total_duration(self) -> float:
        """Simulation seconds spanned by the series."""
        return self.time_interval * (self.total_frames - 1)

    @property
    def last_index(self) -> int:
        return self.total_frames - 1

    def is_valid_index(self, index: int) -> bool:
        return 0 <= index < self.total_frames


@dataclass(frozen=True)
class FrameDisplayInfo:
    """Per-call metadata passed alongside a frame to ``on_frame_ready``."""

    is_interpolated: bool = False
    loading: bool = False


@dataclass(frozen=True)
class LoadProgress:
    """Residency progress reported to ``on_progress``.

    Attributes
    ----------
    loaded_count : int
        Frames resident in the store.
    total_count : int
        Frames in the series.
    loading_count : int
        Frames with a fetch in flight.
    is_ready_for_playback : bool
        Whether the initial batch is resident.
    """

    loaded_count: int
    total_count: int
    loading_count: int = 0
    is_ready_for_playback: bool = False

    @property
    def is_loading(self) -> bool:
        return self.loading_count > 0

    @property
    def fraction(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return min(1.0, self.loaded_count / self.total_count)


__all__ = [
    "ALLOWED_SPEEDS",
    "Frame",
    "FrameDisplayInfo",
    "LoadProgress",
    "Metadata",
]
