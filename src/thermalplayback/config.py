"""Configuration for the frame cache and playback controller.

All tunables live in one frozen dataclass so that a controller's policy is
fixed for its lifetime and can be logged or compared as a unit.

Environment overrides
---------------------
:meth:`PlaybackConfig.from_env` reads ``THERMALPLAYBACK_<FIELD>`` variables,
for example::

    THERMALPLAYBACK_MAX_RETRIES=5 THERMALPLAYBACK_RESUME_AFTER_SCRUB=1 python app.py
"""

from __future__ import annotations

import dataclasses
import math
import os
import warnings
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from thermalplayback._types import ALLOWED_SPEEDS

ENV_PREFIX: str = "THERMALPLAYBACK_"
"""Prefix for environment variable overrides."""

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class PlaybackConfig:
    """Tunable policy values for caching, fetching and playback.

    Attributes
    ----------
    capacity_frames : int | None
        Maximum number of resident frames. If None, sized to the widest
        preload window plus ``safety_margin_frames`` (see
        :attr:`resolved_capacity`).
    safety_margin_frames : int
        Extra frames added on top of the preload window when
        ``capacity_frames`` is None.
    initial_batch_size : int
        Frames that must be resident before ``Loading`` turns into ``Paused``.
    look_ahead_base_count : int
        Preload window length at 1x speed; scaled by the speed multiplier.
    max_retries : int
        Retries after the first failed fetch attempt (so at most
        ``max_retries + 1`` attempts per ticket).
    backoff_base_ms, backoff_cap_ms : float
        Exponential backoff: the delay before retry ``n`` (0-based) is
        ``min(backoff_base_ms * 2**n, backoff_cap_ms)``.
    max_frame_skip_per_tick : int
        Upper bound on frame advances per ``tick``. Excess accumulated time
        is dropped.
    fetch_timeout_ms : float | None
        Per-attempt timeout. None disables the timeout.
    resume_after_scrub : bool
        Resume playback on ``release_scrub`` if the scrub interrupted it.
    background_batch_size : int
        Frames requested per batch by the background loader.
    background_loading : bool
        Whether to keep filling the cache after the initial batch.
    interpolate : bool
        Emit blended frames between resident neighbours during playback.

    Examples
    --------
    >>> config = PlaybackConfig()
    >>> config.max_retries
    3
    >>> config.replace(max_retries=5).max_retries
    5
    """

    capacity_frames: int | None = None
    safety_margin_frames: int = 10
    initial_batch_size: int = 10
    look_ahead_base_count: int = 10
    max_retries: int = 3
    backoff_base_ms: float = 500.0
    backoff_cap_ms: float = 4000.0
    max_frame_skip_per_tick: int = 5
    fetch_timeout_ms: float | None = 10_000.0
    resume_after_scrub: bool = False
    background_batch_size: int = 20
    background_loading: bool = True
    interpolate: bool = False

    def __post_init__(self) -> None:
        _require_positive("initial_batch_size", self.initial_batch_size)
        _require_positive("look_ahead_base_count", self.look_ahead_base_count)
        _require_positive("max_frame_skip_per_tick", self.max_frame_skip_per_tick)
        _require_positive("background_batch_size", self.background_batch_size)
        if self.capacity_frames is not None:
            _require_positive("capacity_frames", self.capacity_frames)
        if self.safety_margin_frames < 0:
            raise ValueError(
                f"safety_margin_frames must be >= 0 (got {self.safety_margin_frames})."
            )
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0 (got {self.max_retries}).")
        if self.backoff_base_ms < 0 or self.backoff_cap_ms < 0:
            raise ValueError(
                "backoff_base_ms and backoff_cap_ms must be >= 0 "
                f"(got {self.backoff_base_ms}, {self.backoff_cap_ms})."
            )
        if self.fetch_timeout_ms is not None and self.fetch_timeout_ms <= 0:
            raise ValueError(
                f"fetch_timeout_ms must be positive or None (got {self.fetch_timeout_ms})."
            )

        if (
            self.capacity_frames is not None
            and self.capacity_frames < self.max_window_frames
        ):
            warnings.warn(
                f"capacity_frames={self.capacity_frames} is smaller than the preload "
                f"window at maximum speed ({self.max_window_frames} frames). "
                "Frames may be evicted before they are displayed.",
                UserWarning,
                stacklevel=3,
            )

    @property
    def max_window_frames(self) -> int:
        """Frames in the preload window at the fastest allowed speed."""
        return math.ceil(self.look_ahead_base_count * max(ALLOWED_SPEEDS)) + 1

    @property
    def resolved_capacity(self) -> int:
        """Effective store capacity in frames."""
        if self.capacity_frames is not None:
            return self.capacity_frames
        return (
            max(self.initial_batch_size, self.max_window_frames)
            + self.safety_margin_frames
        )

    def backoff_delay_ms(self, attempt: int) -> float:
        """Delay before retrying after failed attempt ``attempt`` (0-based)."""
        return min(self.backoff_base_ms * (2**attempt), self.backoff_cap_ms)

    def replace(self, **changes: Any) -> PlaybackConfig:
        """Return a copy with ``changes`` applied (validated again)."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_env(
        cls,
        prefix: str = ENV_PREFIX,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> PlaybackConfig:
        """Build a config from environment variables.

        Parameters
        ----------
        prefix : str, default="THERMALPLAYBACK_"
            Variable name prefix; the field name is upper-cased after it.
        environ : Mapping, optional
            Variables to read instead of ``os.environ``.
        **overrides
            Field values that take precedence over the environment.

        Raises
        ------
        ValueError
            If a variable cannot be parsed for its field type.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            raw = environ.get(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _parse_field(f.name, str(f.type), raw)
        values.update(overrides)
        return cls(**values)


def _require_positive(name: str, value: int) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be positive (got {value}).")


def _parse_field(name: str, type_name: str, raw: str) -> Any:
    raw = raw.strip()
    optional = "None" in type_name
    if optional and raw.lower() in {"none", "null"}:
        return None
    try:
        if type_name.startswith("bool"):
            lowered = raw.lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            raise ValueError(raw)
        if type_name.startswith("int"):
            return int(raw)
        if type_name.startswith("float"):
            return float(raw)
    except ValueError:
        raise ValueError(
            f"Cannot parse environment value {raw!r} for {name} ({type_name})."
        ) from None
    raise ValueError(f"Unsupported config field type for {name}: {type_name}")


__all__ = ["ENV_PREFIX", "PlaybackConfig"]
