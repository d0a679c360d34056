"""
Worker module.
Contains the queue worker and its deadline watchdogs.
"""

from tubeworker.worker.deadline import SignalDeadline, TaskDeadline, create_deadline
from tubeworker.worker.main import Worker, run, run_async

__all__ = [
    "SignalDeadline",
    "TaskDeadline",
    "Worker",
    "create_deadline",
    "run",
    "run_async",
]
