"""Protocols for the external collaborators of the playback controller.

The frame source (simulation backend) and the render sink (whatever paints
the grid) are supplied by the application. These protocols describe the
interface the controller relies on so type checkers can verify adapters
without requiring inheritance.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from thermalplayback._types import (
        Frame,
        FrameDisplayInfo,
        LoadProgress,
        Metadata,
    )
    from thermalplayback.errors import FrameLoadError


@runtime_checkable
class FrameSource(Protocol):
    """Asynchronous provider of metadata and frames.

    Implementations signal per-fetch failures by raising
    :class:`~thermalplayback.errors.SourceUnavailableError` or
    :class:`~thermalplayback.errors.IndexOutOfRangeError`; both are retried
    by the fetch coordinator.
    """

    async def fetch_metadata(self) -> Metadata:
        """Return the dataset description. Called once per initialization."""
        ...

    async def fetch_frame(self, index: int) -> Frame:
        """Return the frame at ``index``."""
        ...


@runtime_checkable
class RenderSink(Protocol):
    """Receiver of frames, progress and terminal errors.

    Frames passed to :meth:`on_frame_ready` are borrowed: a sink that keeps
    the values beyond the call must copy them (``frame.copy_values()``).

    A sink may additionally define ``capture(frame) -> Any``, which
    :meth:`PlaybackController.capture` invokes for image export.
    """

    def on_frame_ready(self, frame: Frame, meta: FrameDisplayInfo) -> None: ...

    def on_progress(self, progress: LoadProgress) -> None: ...

    def on_error(self, error: FrameLoadError) -> None: ...


class NullRenderSink:
    """Render sink that discards everything; the controller's default."""

    def on_frame_ready(self, frame: Frame, meta: FrameDisplayInfo) -> None:
        pass

    def on_progress(self, progress: LoadProgress) -> None:
        pass

    def on_error(self, error: FrameLoadError) -> None:
        pass

    def capture(self, frame: Frame) -> Any:
        return None


__all__ = ["FrameSource", "NullRenderSink", "RenderSink"]
