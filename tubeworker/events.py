"""
Event dispatcher used by jobs and workers to notify observers.

Listeners are plain callables receiving an Event. They are attached either to a
full event type (``job:afterDelete``) or to a whole namespace (``job``).
For cancelable events a listener returning ``False`` aborts the pending
operation. A failing listener is logged and skipped; it never breaks the
caller.
"""

import logging
from collections.abc import Callable
from typing import Any

from tubeworker.types.events import Event

logger = logging.getLogger(__name__)

# Type alias for listener functions
Listener = Callable[[Event], bool | None]


class EventDispatcher:
    """Ordered list of (event type, listener) subscriptions."""

    def __init__(self) -> None:
        self._listeners: list[tuple[str, Listener]] = []

    def attach(self, event_type: str, listener: Listener) -> None:
        """
        Subscribe a listener.

        Args:
            event_type: Full event type or a namespace.
            listener: Callable receiving the Event.
        """
        self._listeners.append((event_type, listener))

    def detach(self, event_type: str, listener: Listener) -> None:
        """Remove a previously attached listener. Unknown pairs are ignored."""
        self._listeners = [
            (key, existing)
            for key, existing in self._listeners
            if not (key == event_type and existing == listener)
        ]

    def detach_all(self, event_type: str | None = None) -> None:
        """Remove every listener, or every listener attached to ``event_type``."""
        if event_type is None:
            self._listeners = []
        else:
            self._listeners = [
                (key, listener) for key, listener in self._listeners if key != event_type
            ]

    def has_listeners(self, event_type: str) -> bool:
        namespace = event_type.partition(":")[0]
        return any(key in (event_type, namespace) for key, _ in self._listeners)

    def fire(
        self,
        event_type: str,
        source: Any,
        data: dict[str, Any] | None = None,
        cancelable: bool = False,
    ) -> bool:
        """
        Notify listeners of an event.

        Args:
            event_type: Full event type, e.g. ``jobWorker:startJobHandling``.
            source: The job or worker firing the event.
            data: Optional extra data.
            cancelable: Whether a ``False`` return stops the operation.

        Returns:
            False if a listener cancelled a cancelable event, True otherwise.
        """
        event = Event(type=event_type, source=source, data=data, cancelable=cancelable)

        for key, listener in list(self._listeners):
            if key != event_type and key != event.namespace:
                continue

            try:
                result = listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed",
                    extra={"event_type": event_type},
                )
                continue

            if cancelable and result is False:
                logger.debug("Event cancelled", extra={"event_type": event_type})
                return False

        return True
