"""Shared test fixtures for the thermalplayback test suite.

Fixture Naming Convention
=========================

**Sources** are in-memory :class:`ArrayFrameSource` instances whose frame
``i`` holds the constant value ``i`` on every node, so the frame a sink
received can be identified from its values alone:
    - small_source: 5 frames, 15 s apart (matches the playback examples)
    - medium_source: 60 frames, 1 s apart (exercises windows and eviction)

**Configs** disable backoff delays so retry tests run instantly:
    - fast_config: zero backoff, no background loading
    - background_config: zero backoff with background loading enabled

**Sinks** are ``MagicMock`` render sinks; inspect ``on_frame_ready`` calls
with :func:`shown_indices`.

Async tests wrap a coroutine in ``asyncio.run`` so they need no plugin.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from unittest.mock import MagicMock

import numpy as np
import pytest
from hypothesis import Phase, Verbosity, settings
from numpy.typing import NDArray

from thermalplayback import ArrayFrameSource, PlaybackConfig, PlaybackController

# =============================================================================
# Hypothesis Configuration for Performance
# =============================================================================
# Register Hypothesis profiles for different testing scenarios:
# - "ci": Fast profile for CI pipelines (fewer examples, no deadline)
# - "dev": Standard development profile (moderate examples)
# - "thorough": Full property testing (many examples, for pre-release)

settings.register_profile(
    "ci",
    max_examples=10,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate],
    verbosity=Verbosity.quiet,
)

settings.register_profile(
    "dev",
    max_examples=25,
    deadline=5000,
    verbosity=Verbosity.normal,
)

settings.register_profile(
    "thorough",
    max_examples=100,
    deadline=None,
    verbosity=Verbosity.verbose,
)

# Set HYPOTHESIS_PROFILE=ci in CI environments for faster tests
_profile = os.environ.get("HYPOTHESIS_PROFILE", "dev")
settings.load_profile(_profile)

# =============================================================================
# Test Configuration Constants
# =============================================================================

SMALL_N_FRAMES = 5
SMALL_INTERVAL_S = 15.0
MEDIUM_N_FRAMES = 60
MEDIUM_INTERVAL_S = 1.0
N_NODES = 4

# One interval of wall time at 1x for the small dataset
ONE_FRAME_MS = SMALL_INTERVAL_S * 1000


# =============================================================================
# Helpers
# =============================================================================


def indexed_fields(n_frames: int, n_nodes: int = N_NODES) -> NDArray[np.float64]:
    """Fields where every node of frame ``i`` equals ``i``."""
    return np.repeat(np.arange(n_frames, dtype=np.float64)[:, None], n_nodes, axis=1)


def shown_indices(sink: MagicMock, *, include_loading: bool = False) -> list[int]:
    """Indices passed to ``sink.on_frame_ready``, in call order.

    Loading placeholders (the held frame re-sent with ``loading=True``) and
    interpolated frames are excluded unless ``include_loading`` is set.
    """
    indices = []
    for call in sink.on_frame_ready.call_args_list:
        frame, info = call.args
        if info.is_interpolated:
            continue
        if info.loading and not include_loading:
            continue
        indices.append(frame.index)
    return indices


async def settle(controller: PlaybackController) -> None:
    """Wait until no fetch is in flight and every callback has run."""
    await controller.coordinator.wait_idle()
    await asyncio.sleep(0)


# =============================================================================
# --- Fixtures ---
# =============================================================================


@pytest.fixture
def fast_config() -> PlaybackConfig:
    """Zero-backoff config without background loading."""
    return PlaybackConfig(
        backoff_base_ms=0.0,
        backoff_cap_ms=0.0,
        background_loading=False,
    )


@pytest.fixture
def background_config(fast_config: PlaybackConfig) -> PlaybackConfig:
    """Zero-backoff config that keeps loading after the initial batch."""
    return fast_config.replace(background_loading=True, background_batch_size=8)


@pytest.fixture
def small_source() -> ArrayFrameSource:
    """5 frames, 15 s apart."""
    return ArrayFrameSource(indexed_fields(SMALL_N_FRAMES), time_interval=SMALL_INTERVAL_S)


@pytest.fixture
def medium_source() -> ArrayFrameSource:
    """60 frames, 1 s apart."""
    return ArrayFrameSource(
        indexed_fields(MEDIUM_N_FRAMES), time_interval=MEDIUM_INTERVAL_S
    )


@pytest.fixture
def sink() -> MagicMock:
    """Mock render sink recording every callback."""
    return MagicMock(name="render_sink")


@pytest.fixture
def make_controller(
    sink: MagicMock, fast_config: PlaybackConfig
) -> Callable[..., PlaybackController]:
    """Factory building a controller around a source with the shared sink."""

    def _make(
        source: ArrayFrameSource, config: PlaybackConfig | None = None
    ) -> PlaybackController:
        return PlaybackController(
            source, sink=sink, config=config if config is not None else fast_config
        )

    return _make
