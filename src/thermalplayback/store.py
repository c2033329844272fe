"""Bounded in-memory frame store with LRU eviction.

The store holds the working set of decoded frames. Recency is tracked with a
monotonic access counter rather than wall-clock time so that eviction order
is deterministic and testable.
"""

from __future__ import annotations

import logging
from collections import Counter, OrderedDict
from collections.abc import Container, Iterator
from dataclasses import dataclass
from typing import Any

from thermalplayback._timing import timed
from thermalplayback._types import Frame

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A resident frame plus its position in the recency order."""

    frame: Frame
    last_access_seq: int


class FrameStore:
    """Map from frame index to frame, bounded by a resident-frame count.

    Eviction is strict least-recently-used by ``last_access_seq``, ties
    broken by the lowest index. Pinned indices are never evicted; the
    playback controller pins the frame at the playhead and the fetch
    coordinator pins a freshly fetched frame until its waiters have been
    notified.

    Parameters
    ----------
    capacity : int
        Maximum number of resident frames after :meth:`evict_if_over_capacity`
        (exceeded only if every resident frame is pinned).

    Attributes
    ----------
    _entries : OrderedDict
        Entries in ascending ``last_access_seq`` order (oldest first).
    _pins : Counter
        Reference count of pins per index.

    Notes
    -----
    The store is not thread-safe. All mutation must happen on the event loop
    thread that owns the controller.

    Examples
    --------
    >>> from thermalplayback import Frame
    >>> store = FrameStore(capacity=2)
    >>> for i in range(3):
    ...     _ = store.put(i, Frame(index=i, time=float(i), values=[0.0]))
    >>> sorted(store.resident_indices())
    [1, 2]
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive (got {capacity}).")
        self._capacity = capacity
        self._entries: OrderedDict[int, CacheEntry] = OrderedDict()
        self._pins: Counter[int] = Counter()
        self._seq = 0
        self._nbytes = 0

        self._hits = 0
        self._misses = 0
        self._loads = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, index: object) -> bool:
        return index in self._entries

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._entries))

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def memory_bytes(self) -> int:
        """Bytes held by the field arrays of resident frames."""
        return self._nbytes

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def has(self, index: int) -> bool:
        """Whether ``index`` is resident. Does not affect recency or stats."""
        return index in self._entries

    def get(self, index: int) -> Frame | None:
        """Return the resident frame for ``index`` and mark it recently used.

        Counts a hit or a miss; the counters are informational only.
        """
        entry = self._entries.get(index)
        if entry is None:
            self._misses += 1
            logger.debug(f"cache miss for frame {index}")
            return None
        self._hits += 1
        entry.last_access_seq = self._next_seq()
        self._entries.move_to_end(index)
        return entry.frame

    def peek(self, index: int) -> Frame | None:
        """Return the resident frame without touching recency or stats."""
        entry = self._entries.get(index)
        return entry.frame if entry is not None else None

    def touch(self, index: int) -> bool:
        """Refresh the recency of ``index``. Returns False if not resident."""
        entry = self._entries.get(index)
        if entry is None:
            return False
        entry.last_access_seq = self._next_seq()
        self._entries.move_to_end(index)
        return True

    @timed
    def put(self, index: int, frame: Frame) -> list[int]:
        """Insert or replace the frame at ``index`` and enforce capacity.

        Parameters
        ----------
        index : int
            Frame index; must equal ``frame.index``.
        frame : Frame
            Frame to store.

        Returns
        -------
        list of int
            Indices evicted to make room.

        Raises
        ------
        ValueError
            If ``index`` does not match ``frame.index``.
        """
        if frame.index != index:
            raise ValueError(
                f"Frame index mismatch: stored under {index} but frame.index is "
                f"{frame.index}."
            )
        previous = self._entries.get(index)
        if previous is not None:
            self._nbytes -= previous.frame.values.nbytes
        self._entries[index] = CacheEntry(frame=frame, last_access_seq=self._next_seq())
        self._entries.move_to_end(index)
        self._nbytes += frame.values.nbytes
        self._loads += 1
        return self.evict_if_over_capacity()

    def evict_if_over_capacity(self) -> list[int]:
        """Evict least-recently-used unpinned frames until within capacity.

        Returns
        -------
        list of int
            Evicted indices, in eviction order.
        """
        excess = len(self._entries) - self._capacity
        if excess <= 0:
            return []

        # Entries are kept in seq order and seq is strictly increasing, so
        # the front of the OrderedDict is the (seq, index) minimum.
        victims = [idx for idx in self._entries if not self._pins[idx]][:excess]
        for idx in victims:
            self._nbytes -= self._entries.pop(idx).frame.values.nbytes
        self._evictions += len(victims)
        if victims:
            logger.debug(f"evicted frames {victims} (LRU), {len(self)} resident")
        if len(victims) < excess:
            logger.debug(
                f"store over capacity by {excess - len(victims)}: remaining "
                "frames are pinned"
            )
        return victims

    def pin(self, index: int) -> None:
        """Protect ``index`` from eviction (reference counted)."""
        self._pins[index] += 1

    def unpin(self, index: int) -> None:
        """Release one pin on ``index`` and evict if the store is over capacity."""
        if self._pins[index] <= 1:
            del self._pins[index]
        else:
            self._pins[index] -= 1
        self.evict_if_over_capacity()

    def is_pinned(self, index: int) -> bool:
        return self._pins[index] > 0

    def resident_indices(self) -> list[int]:
        """Resident indices from least to most recently used."""
        return list(self._entries)

    def resize(self, capacity: int) -> list[int]:
        """Change the capacity, evicting as needed. Returns evicted indices."""
        if capacity <= 0:
            raise ValueError(f"capacity must be positive (got {capacity}).")
        self._capacity = capacity
        logger.debug(f"store capacity set to {capacity}")
        return self.evict_if_over_capacity()

    def clear(self) -> None:
        """Drop every frame and pin (e.g. when switching datasets)."""
        previous = len(self._entries)
        self._entries.clear()
        self._pins.clear()
        self._nbytes = 0
        logger.debug(f"cleared store ({previous} frames)")

    def reset_stats(self) -> None:
        self._hits = self._misses = self._loads = self._evictions = 0

    def stats(self) -> dict[str, Any]:
        """Counters for observability.

        Returns
        -------
        dict
            ``hits``, ``misses``, ``resident_count``, ``capacity``,
            ``evictions``, ``loads``, ``hit_rate`` (0-1), ``memory_bytes``
            and ``utilization`` (resident fraction of capacity, 0-1).
        """
        lookups = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "resident_count": len(self._entries),
            "capacity": self._capacity,
            "evictions": self._evictions,
            "loads": self._loads,
            "hit_rate": self._hits / lookups if lookups else 0.0,
            "memory_bytes": self._nbytes,
            "utilization": len(self._entries) / self._capacity,
        }

    def coverage(
        self, start: int, stop: int, loading: Container[int] = ()
    ) -> dict[str, int]:
        """Count cached, loading and missing frames in ``range(start, stop)``."""
        cached = in_flight = missing = 0
        for idx in range(start, stop):
            if idx in self._entries:
                cached += 1
            elif idx in loading:
                in_flight += 1
            else:
                missing += 1
        return {
            "cached": cached,
            "loading": in_flight,
            "missing": missing,
            "total": max(0, stop - start),
        }


__all__ = ["CacheEntry", "FrameStore"]
