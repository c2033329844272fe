"""Minimal publish/subscribe surface for UI glue.

The controller reports ``state_changed``, ``speed_changed`` and
``scrub_position_changed`` through an :class:`EventEmitter`. Listeners are
plain callables invoked synchronously, in registration order, on the event
loop thread.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

STATE_CHANGED = "state_changed"
SPEED_CHANGED = "speed_changed"
SCRUB_POSITION_CHANGED = "scrub_position_changed"

EVENT_NAMES: frozenset[str] = frozenset(
    {STATE_CHANGED, SPEED_CHANGED, SCRUB_POSITION_CHANGED}
)


class EventEmitter:
    """Registry of listeners keyed by event name.

    Examples
    --------
    >>> events = EventEmitter()
    >>> seen = []
    >>> unsubscribe = events.connect("speed_changed", seen.append)
    >>> events.emit("speed_changed", 2.0)
    >>> seen
    [2.0]
    >>> unsubscribe()
    >>> events.emit("speed_changed", 5.0)
    >>> seen
    [2.0]
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[[Any], None]]] = {
            name: [] for name in EVENT_NAMES
        }

    def connect(
        self, event: str, callback: Callable[[Any], None]
    ) -> Callable[[], None]:
        """Register ``callback`` for ``event`` and return an unsubscribe function.

        Raises
        ------
        ValueError
            If ``event`` is not one of :data:`EVENT_NAMES`.
        TypeError
            If ``callback`` is not callable.
        """
        if event not in self._listeners:
            raise ValueError(
                f"Unknown event {event!r}. Expected one of {sorted(EVENT_NAMES)}."
            )
        if not callable(callback):
            raise TypeError(f"callback must be callable (got {type(callback).__name__}).")
        self._listeners[event].append(callback)
        return lambda: self.disconnect(event, callback)

    def disconnect(self, event: str, callback: Callable[[Any], None]) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def emit(self, event: str, payload: Any) -> None:
        logger.debug(f"emit {event}: {payload!r}")
        # Copy so a listener may disconnect itself during dispatch
        for callback in list(self._listeners[event]):
            callback(payload)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))


__all__ = [
    "EVENT_NAMES",
    "SCRUB_POSITION_CHANGED",
    "SPEED_CHANGED",
    "STATE_CHANGED",
    "EventEmitter",
]
