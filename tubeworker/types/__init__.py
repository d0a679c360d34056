"""
Type definitions for the queue client and worker.
"""

from tubeworker.types.events import Event
from tubeworker.types.job import (
    AutoPush,
    JobSnapshot,
    Message,
    ReservedJob,
    SendOptions,
    merge_send_options,
)

__all__ = [
    # Job types
    "AutoPush",
    "JobSnapshot",
    "Message",
    "ReservedJob",
    "SendOptions",
    "merge_send_options",
    # Event types
    "Event",
]
