"""
Event type definitions for the notification sink.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class Event:
    """
    A named notification fired by a job or a worker.

    ``type`` is the full name, e.g. ``job:beforeSend`` or
    ``jobWorker:endJobHandling``.
    """

    type: str
    source: Any
    data: dict[str, Any] | None = None
    cancelable: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def namespace(self) -> str:
        """Part of the event type before the colon."""
        return self.type.partition(":")[0]

    @property
    def name(self) -> str:
        """Part of the event type after the colon."""
        return self.type.partition(":")[2]
