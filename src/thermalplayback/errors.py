"""Exception taxonomy for frame caching and playback.

Every exception carries a bracketed error code at the start of its message
(``[P1001]`` etc.) so log lines and bug reports can be matched to the
troubleshooting notes. Each class also inherits from the builtin exception it
refines, so existing ``except ValueError`` / ``except RuntimeError`` handlers
keep working.

Error codes
-----------
P1001
    Invalid dataset metadata (fatal, raised at initialization).
P2001
    Frame source temporarily unavailable (retried).
P2002
    Frame index rejected by the source (retried).
P2003
    Fetch attempt exceeded the configured timeout (retried).
P2004
    Frame could not be loaded after all retries (terminal).
P3001
    Playback speed not in the allowed set (usage error).
P3002
    Operation requires data that is not loaded yet (usage error).
"""

from __future__ import annotations


class PlaybackError(Exception):
    """Base class for all errors raised by thermalplayback."""

    error_code: str = ""

    def __init__(self, message: str) -> None:
        if self.error_code:
            message = f"[{self.error_code}] {message}"
        super().__init__(message)


class InvalidMetadataError(PlaybackError, ValueError):
    """Raised when a dataset description cannot be played back.

    Examples
    --------
    >>> from thermalplayback import Metadata
    >>> Metadata(total_frames=0, time_interval=1.0)  # doctest: +SKIP
    InvalidMetadataError: [P1001] total_frames must be positive (got 0).
    """

    error_code = "P1001"


class FrameSourceError(PlaybackError):
    """Base class for per-fetch failures that the fetch coordinator retries."""


class SourceUnavailableError(FrameSourceError):
    """Raised by a frame source that cannot serve a request right now."""

    error_code = "P2001"


class IndexOutOfRangeError(FrameSourceError, IndexError):
    """Raised by a frame source for an index outside ``[0, total_frames)``."""

    error_code = "P2002"

    def __init__(self, index: int, total_frames: int | None = None) -> None:
        self.index = index
        self.total_frames = total_frames
        if total_frames is None:
            message = f"Frame index {index} is out of range."
        else:
            message = (
                f"Frame index {index} is out of range for {total_frames} frames "
                f"(valid: 0-{total_frames - 1})."
            )
        super().__init__(message)


class FetchTimeoutError(FrameSourceError, TimeoutError):
    """Raised when a single fetch attempt takes longer than ``fetch_timeout_ms``."""

    error_code = "P2003"

    def __init__(self, index: int, timeout_ms: float) -> None:
        self.index = index
        self.timeout_ms = timeout_ms
        super().__init__(f"Fetching frame {index} timed out after {timeout_ms:g} ms.")


class FrameLoadError(PlaybackError):
    """Terminal failure to load a frame.

    Raised to every waiter of a fetch ticket once its retries are exhausted,
    and passed to ``RenderSink.on_error`` when the failed frame was required
    for playback.

    Parameters
    ----------
    index : int
        Frame index that could not be loaded.
    cause : BaseException
        Last underlying error.
    attempts : int
        Number of fetch attempts made before giving up.
    """

    error_code = "P2004"

    def __init__(self, index: int, cause: BaseException, attempts: int) -> None:
        self.index = index
        self.cause = cause
        self.attempts = attempts
        super().__init__(
            f"Failed to load frame {index} after {attempts} attempt(s): {cause}"
        )


class InvalidSpeedError(PlaybackError, ValueError):
    """Raised by ``set_speed`` for a multiplier outside the allowed set."""

    error_code = "P3001"

    def __init__(self, multiplier: object, allowed: tuple[float, ...]) -> None:
        self.multiplier = multiplier
        allowed_str = ", ".join(f"{s:g}" for s in allowed)
        super().__init__(
            f"Playback speed {multiplier!r} is not supported. "
            f"Choose one of: {allowed_str}."
        )


class NotReadyError(PlaybackError, RuntimeError):
    """Raised when an operation needs frames or metadata that are not loaded."""

    error_code = "P3002"


__all__ = [
    "FetchTimeoutError",
    "FrameLoadError",
    "FrameSourceError",
    "IndexOutOfRangeError",
    "InvalidMetadataError",
    "InvalidSpeedError",
    "NotReadyError",
    "PlaybackError",
    "SourceUnavailableError",
]
