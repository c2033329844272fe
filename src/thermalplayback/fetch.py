"""Deduplicated, retrying frame fetches against the external frame source.

Every frame index has at most one live :class:`FetchTicket`. Callers of
:meth:`FetchCoordinator.request` receive their own waiter future attached to
that ticket, so N concurrent requests for the same index cost exactly one
round trip to the source and all N waiters see the same frame or error.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Container, Iterable
from typing import Any

from thermalplayback._timing import timing
from thermalplayback._types import Frame
from thermalplayback.config import PlaybackConfig
from thermalplayback.errors import (
    FetchTimeoutError,
    FrameLoadError,
    FrameSourceError,
)
from thermalplayback.protocols import FrameSource
from thermalplayback.store import FrameStore

logger = logging.getLogger(__name__)


class TicketStatus(enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


class FetchTicket:
    """One logical in-flight request for a frame index.

    Parameters
    ----------
    index : int
        Frame index being fetched.

    Attributes
    ----------
    waiters : list of asyncio.Future
        Futures to resolve when the fetch finishes.
    cancelled : bool
        Set by :meth:`FetchCoordinator.cancel`. A cancelled ticket keeps
        fetching and still writes its frame to the store; only delivery to
        waiters is suppressed.
    attempts : int
        Fetch attempts made so far.
    """

    def __init__(self, index: int) -> None:
        self.index = index
        self.waiters: list[asyncio.Future[Frame]] = []
        self.cancelled = False
        self.attempts = 0
        self.status = TicketStatus.PENDING
        self.result: Frame | None = None
        self.error: FrameLoadError | None = None
        self.task: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return (
            f"FetchTicket(index={self.index}, status={self.status.value}, "
            f"waiters={len(self.waiters)}, cancelled={self.cancelled})"
        )

    @property
    def is_pending(self) -> bool:
        return self.status is TicketStatus.PENDING

    def attach(self, loop: asyncio.AbstractEventLoop) -> asyncio.Future[Frame]:
        """Create a waiter future; already-settled tickets settle it at once."""
        waiter: asyncio.Future[Frame] = loop.create_future()
        if self.status is TicketStatus.RESOLVED:
            waiter.set_result(self.result)  # type: ignore[arg-type]
        elif self.status is TicketStatus.FAILED:
            waiter.set_exception(self.error)  # type: ignore[arg-type]
        else:
            self.waiters.append(waiter)
        return waiter


class FetchCoordinator:
    """Turn arbitrary frame requests into at most one source call per index.

    Parameters
    ----------
    source : FrameSource
        Backend that produces frames.
    store : FrameStore
        Destination for successfully fetched frames. The coordinator is the
        only writer of frames into the store.
    config : PlaybackConfig, optional
        Retry, backoff and timeout policy. Defaults to ``PlaybackConfig()``.

    Notes
    -----
    Must be used from inside a running asyncio event loop. Transient
    failures (:class:`FrameSourceError`, including timeouts) are retried with
    exponential backoff; after ``max_retries`` retries the ticket fails with
    :class:`FrameLoadError`. Any other exception from the source is treated
    as a bug in the source and fails the ticket immediately.

    A settled ticket stays in the ticket table until the done-callbacks of
    its waiters have run, so a later :meth:`request` for the same index never
    observes the frame before those callbacks do.

    Examples
    --------
    >>> import asyncio
    >>> import numpy as np
    >>> from thermalplayback import ArrayFrameSource, FrameStore
    >>> async def demo():
    ...     source = ArrayFrameSource(np.zeros((5, 3)), time_interval=1.0)
    ...     coordinator = FetchCoordinator(source, FrameStore(capacity=5))
    ...     a, b = coordinator.request(2), coordinator.request(2)
    ...     frames = await asyncio.gather(a, b)
    ...     return frames[0] is frames[1], source.fetch_counts[2]
    >>> asyncio.run(demo())
    (True, 1)
    """

    def __init__(
        self,
        source: FrameSource,
        store: FrameStore,
        config: PlaybackConfig | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._config = config if config is not None else PlaybackConfig()
        self._tickets: dict[int, FetchTicket] = {}
        self._failed: set[int] = set()
        self._listeners: list[Callable[[int, FrameLoadError | None], None]] = []

        self._requests = 0
        self._deduplicated = 0
        self._fetch_attempts = 0
        self._retries = 0
        self._failures = 0

    @property
    def source(self) -> FrameSource:
        return self._source

    @property
    def failed_indices(self) -> list[int]:
        """Indices whose most recent ticket failed terminally."""
        return sorted(self._failed)

    def add_listener(
        self, callback: Callable[[int, FrameLoadError | None], None]
    ) -> None:
        """Call ``callback(index, error)`` after every ticket settles.

        ``error`` is None on success. Listeners run after the ticket's
        waiters have been notified.
        """
        self._listeners.append(callback)

    def request(self, index: int) -> asyncio.Future[Frame]:
        """Return a future for the frame at ``index``.

        Resident frames resolve immediately (and count as a store hit).
        Otherwise the caller is attached to the existing ticket for
        ``index`` or a new ticket is started.

        Raises
        ------
        RuntimeError
            If called outside a running event loop.
        """
        loop = asyncio.get_running_loop()
        self._requests += 1

        ticket = self._tickets.get(index)
        if ticket is not None:
            if ticket.is_pending:
                self._deduplicated += 1
                if ticket.cancelled:
                    logger.debug(f"frame {index} wanted again, reviving ticket")
                    ticket.cancelled = False
                else:
                    logger.debug(f"attached waiter to in-flight ticket {index}")
            return ticket.attach(loop)

        frame = self._store.get(index)
        if frame is not None:
            waiter: asyncio.Future[Frame] = loop.create_future()
            waiter.set_result(frame)
            return waiter

        ticket = FetchTicket(index)
        self._tickets[index] = ticket
        waiter = ticket.attach(loop)
        ticket.task = loop.create_task(self._run(ticket), name=f"fetch-frame-{index}")
        logger.debug(f"started fetch ticket for frame {index}")
        return waiter

    def cancel(self, index: int) -> bool:
        """Mark the pending ticket for ``index`` as no longer needed.

        Cancels the waiter futures so playback logic is not notified. The
        underlying fetch continues and its frame is still cached. Never
        raises.

        Returns
        -------
        bool
            True if a pending ticket was cancelled.
        """
        ticket = self._tickets.get(index)
        if ticket is None or not ticket.is_pending or ticket.cancelled:
            return False
        ticket.cancelled = True
        for waiter in ticket.waiters:
            waiter.cancel()
        ticket.waiters.clear()
        logger.debug(f"cancelled delivery for frame {index}")
        return True

    def cancel_outside(self, keep: Container[int]) -> list[int]:
        """Cancel every pending ticket whose index is not in ``keep``."""
        return [
            idx
            for idx in list(self._tickets)
            if idx not in keep and self.cancel(idx)
        ]

    def is_failed(self, index: int) -> bool:
        return index in self._failed

    def is_loading(self, index: int) -> bool:
        ticket = self._tickets.get(index)
        return ticket is not None and ticket.is_pending

    def pending_indices(self) -> list[int]:
        """Indices with a pending, non-cancelled ticket."""
        return sorted(
            idx for idx, t in self._tickets.items() if t.is_pending and not t.cancelled
        )

    def in_flight_indices(self) -> list[int]:
        """Indices with any pending ticket, cancelled or not."""
        return sorted(idx for idx, t in self._tickets.items() if t.is_pending)

    def ticket(self, index: int) -> FetchTicket | None:
        return self._tickets.get(index)

    async def wait_settled(self, indices: Iterable[int]) -> None:
        """Wait until the in-flight fetches for ``indices`` have settled.

        Unlike awaiting waiters from :meth:`request`, this is unaffected by
        :meth:`cancel`, which suppresses delivery but not the fetch itself.
        Indices without a pending ticket are ignored.
        """
        tasks = []
        for idx in indices:
            ticket = self._tickets.get(idx)
            if ticket is not None and ticket.is_pending and ticket.task is not None:
                tasks.append(ticket.task)
        if tasks:
            await asyncio.wait(tasks)
        # Let call_soon finalisers run
        await asyncio.sleep(0)

    async def wait_idle(self) -> None:
        """Wait until no ticket is in flight and all settlements are finalised."""
        while self._tickets:
            tasks = [t.task for t in self._tickets.values() if t.task is not None]
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            # Let call_soon finalisers (and waiter callbacks) run
            await asyncio.sleep(0)

    def close(self) -> None:
        """Abort all in-flight fetches and forget every ticket."""
        for ticket in self._tickets.values():
            for waiter in ticket.waiters:
                waiter.cancel()
            ticket.waiters.clear()
            if ticket.task is not None and not ticket.task.done():
                ticket.task.cancel()
            if ticket.status is TicketStatus.RESOLVED:
                self._store.unpin(ticket.index)
        if self._tickets:
            logger.debug(f"closed coordinator with {len(self._tickets)} ticket(s)")
        self._tickets.clear()
        self._failed.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "requests": self._requests,
            "deduplicated": self._deduplicated,
            "fetch_attempts": self._fetch_attempts,
            "retries": self._retries,
            "failures": self._failures,
            "in_flight": len(self.in_flight_indices()),
        }

    async def _fetch_once(self, index: int) -> Frame:
        timeout_ms = self._config.fetch_timeout_ms
        with timing(f"fetch_frame[{index}]"):
            if timeout_ms is None:
                frame = await self._source.fetch_frame(index)
            else:
                try:
                    frame = await asyncio.wait_for(
                        self._source.fetch_frame(index), timeout_ms / 1000
                    )
                except asyncio.TimeoutError:
                    raise FetchTimeoutError(index, timeout_ms) from None

        if not isinstance(frame, Frame):
            raise TypeError(
                f"Frame source returned {type(frame).__name__} for frame {index}; "
                "expected Frame."
            )
        if frame.index != index:
            raise ValueError(
                f"Frame source returned frame {frame.index} when asked for {index}."
            )
        return frame

    async def _run(self, ticket: FetchTicket) -> None:
        max_attempts = self._config.max_retries + 1
        last_error: BaseException | None = None

        while ticket.attempts < max_attempts:
            ticket.attempts += 1
            self._fetch_attempts += 1
            try:
                frame = await self._fetch_once(ticket.index)
            except FrameSourceError as exc:
                last_error = exc
                if ticket.attempts >= max_attempts:
                    break
                delay_ms = self._config.backoff_delay_ms(ticket.attempts - 1)
                self._retries += 1
                logger.warning(
                    f"Fetch of frame {ticket.index} failed (attempt "
                    f"{ticket.attempts}/{max_attempts}): {exc}. "
                    f"Retrying in {delay_ms:g} ms."
                )
                await asyncio.sleep(delay_ms / 1000)
            except Exception as exc:
                # Not a transient source failure: do not retry
                last_error = exc
                break
            else:
                self._settle_success(ticket, frame)
                return

        assert last_error is not None
        self._settle_failure(
            ticket, FrameLoadError(ticket.index, last_error, ticket.attempts)
        )

    def _settle_success(self, ticket: FetchTicket, frame: Frame) -> None:
        ticket.status = TicketStatus.RESOLVED
        ticket.result = frame
        self._failed.discard(ticket.index)

        # Pinned until _finalize so delivery cannot race an eviction
        self._store.pin(ticket.index)
        self._store.put(ticket.index, frame)

        if ticket.cancelled:
            logger.debug(f"frame {ticket.index} cached; delivery suppressed")
        for waiter in ticket.waiters:
            if not waiter.done():
                waiter.set_result(frame)
        ticket.waiters.clear()
        asyncio.get_running_loop().call_soon(self._finalize, ticket)

    def _settle_failure(self, ticket: FetchTicket, error: FrameLoadError) -> None:
        ticket.status = TicketStatus.FAILED
        ticket.error = error
        self._failures += 1
        self._failed.add(ticket.index)
        logger.error(str(error))

        for waiter in ticket.waiters:
            if not waiter.done():
                waiter.set_exception(error)
        ticket.waiters.clear()
        asyncio.get_running_loop().call_soon(self._finalize, ticket)

    def _finalize(self, ticket: FetchTicket) -> None:
        if self._tickets.get(ticket.index) is not ticket:
            # Already dropped by close()
            return
        del self._tickets[ticket.index]
        if ticket.status is TicketStatus.RESOLVED:
            self._store.unpin(ticket.index)
        for callback in list(self._listeners):
            callback(ticket.index, ticket.error)


__all__ = ["FetchCoordinator", "FetchTicket", "TicketStatus"]
