"""
Job base class and lifecycle state machine.

A job is created in memory, optionally sent (the server assigns its id), then
reserved by a worker that rebuilds it from its snapshot. A reserved job ends in
exactly one of released, deleted or buried. Illegal operations (sending twice,
deleting a released job, ...) return False and append a Message instead of
raising, so retries and crash recovery can repeat them safely.
"""

import logging
import re
from abc import ABC, abstractmethod
from numbers import Real
from typing import TYPE_CHECKING, Any

from tubeworker.constants import (
    DEFAULT_DELAY,
    DEFAULT_MAX_ATTEMPTS_TO_DELETE,
    DEFAULT_PRIORITY,
    DEFAULT_TTR,
    DEFAULT_TUBE,
    EVENT_AFTER_BURY,
    EVENT_AFTER_DELETE,
    EVENT_AFTER_RELEASE,
    EVENT_AFTER_SEND,
    EVENT_AFTER_VALIDATION_ON_SEND,
    EVENT_BEFORE_BURY,
    EVENT_BEFORE_DELETE,
    EVENT_BEFORE_RELEASE,
    EVENT_BEFORE_SEND,
    EVENT_BEFORE_VALIDATION_ON_SEND,
    EVENT_NAMESPACE_JOB,
    EVENT_NOT_BURIED,
    EVENT_NOT_DELETED,
    EVENT_NOT_RELEASED,
    EVENT_NOT_SENT,
    EVENT_ON_VALIDATION_FAILS,
    EVENT_VALIDATION,
    JOB_TRANSITIONS,
    SPAN_SEND_JOB,
    JobState,
    Operation,
)
from tubeworker.events import EventDispatcher
from tubeworker.observability.metrics import get_metrics
from tubeworker.observability.tracing import create_span
from tubeworker.types.job import (
    AutoPush,
    JobSnapshot,
    Message,
    SendOptions,
    merge_send_options,
)

if TYPE_CHECKING:
    from tubeworker.adapter.base import Adapter

logger = logging.getLogger(__name__)

_CANCEL_EVENTS: dict[Operation, str] = {
    Operation.SEND: EVENT_NOT_SENT,
    Operation.DELETE: EVENT_NOT_DELETED,
    Operation.RELEASE: EVENT_NOT_RELEASED,
    Operation.BURY: EVENT_NOT_BURIED,
}

_REJECTIONS: dict[JobState, str] = {
    JobState.NEW: "The job has not been sent to the queue.",
    JobState.SENT: "The job has not been reserved.",
    JobState.RELEASED: "The job has already been released.",
    JobState.DELETED: "The job has already been deleted.",
    JobState.BURIED: "The job has already been buried.",
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _hook_name(event_name: str) -> str:
    """beforeSend -> before_send"""
    return _CAMEL_BOUNDARY.sub("_", event_name).lower()


class Job(ABC):
    """
    Base class for queue jobs.

    Subclasses implement ``handle()`` and may override ``initialize()`` to set
    their defaults, ``validation()`` to check the job before it is sent, and
    lifecycle hooks named after the events (``before_send``, ``after_delete``,
    ...). A hook returning False cancels a ``before*`` operation.
    """

    def __init__(
        self,
        connection: "Adapter | None" = None,
        events: EventDispatcher | None = None,
        payload: Any = None,
    ):
        """
        Initialize the job.

        Args:
            connection: Adapter used for queue operations.
            events: Dispatcher notified of lifecycle events.
            payload: Consumer-defined work description.
        """
        self._connection = connection
        self._events = events

        self._job_id: int | None = None
        self._job_type: str | None = None
        self._job_name = type(self).__name__
        self._queue_name = DEFAULT_TUBE
        self._queue_prefix = ""
        self._priority = DEFAULT_PRIORITY
        self._delay = DEFAULT_DELAY
        self._ttr = DEFAULT_TTR
        self._attempts = 0
        self._max_attempts_to_delete = DEFAULT_MAX_ATTEMPTS_TO_DELETE
        self._attempt_delay: float = 0
        self._auto_push = AutoPush()

        self._state = JobState.NEW
        self._operation_made: Operation | None = None
        self._messages: list[Message] = []

        self.payload = payload

        self.initialize()

    def initialize(self) -> None:
        """Hook for subclasses to set their defaults."""

    @abstractmethod
    async def handle(self) -> bool:
        """
        Do the work.

        Returns:
            True on success. False (or an exception) counts as a failed attempt.
        """

    def validation(self) -> list[Message]:
        """
        Hook checking the job before it is sent.

        Returns:
            Messages describing problems. Any message aborts the send.
        """
        return []

    # ------------------------------------------------------------------
    # Bound collaborators
    # ------------------------------------------------------------------

    @property
    def connection(self) -> "Adapter":
        if self._connection is None:
            raise RuntimeError("No connection bound to the job. Pass an adapter first.")
        return self._connection

    @connection.setter
    def connection(self, adapter: "Adapter") -> None:
        self._connection = adapter

    @property
    def events(self) -> EventDispatcher | None:
        return self._events

    @events.setter
    def events(self, dispatcher: EventDispatcher | None) -> None:
        self._events = dispatcher

    # ------------------------------------------------------------------
    # Identity and scheduling fields
    # ------------------------------------------------------------------

    @property
    def job_id(self) -> int | None:
        return self._job_id

    @job_id.setter
    def job_id(self, value: int) -> None:
        # Once assigned the id never changes
        if self._job_id is not None:
            return
        self._job_id = value
        if self._state == JobState.NEW:
            self._state = JobState.SENT

    @property
    def job_type(self) -> str:
        """Registry key used to rebuild the job after reservation."""
        return self._job_type or type(self).__name__

    @job_type.setter
    def job_type(self, value: str) -> None:
        self._job_type = value

    @property
    def job_name(self) -> str:
        return self._job_name

    @job_name.setter
    def job_name(self, value: str) -> None:
        self._job_name = value

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @queue_name.setter
    def queue_name(self, value: str) -> None:
        self._queue_name = value

    @property
    def queue_prefix(self) -> str:
        return self._queue_prefix

    @queue_prefix.setter
    def queue_prefix(self, value: str) -> None:
        self._queue_prefix = value

    @property
    def full_queue_name(self) -> str:
        """Prefix + name, plus the job name for auto-push jobs."""
        suffix = self._job_name if self._auto_push.enabled else ""
        return f"{self._queue_prefix}{self._queue_name}{suffix}"

    @property
    def priority(self) -> int:
        return self._priority

    @priority.setter
    def priority(self, value: int) -> None:
        if value < 0:
            raise ValueError("The priority cannot be less than zero.")
        self._priority = value

    @property
    def delay(self) -> int:
        return self._delay

    @delay.setter
    def delay(self, value: int) -> None:
        if value < 0:
            raise ValueError("The delay cannot be less than zero.")
        self._delay = value

    @property
    def ttr(self) -> int:
        return self._ttr

    @ttr.setter
    def ttr(self, value: int) -> None:
        if value < 0:
            raise ValueError("The execution time cannot be less than zero.")
        self._ttr = value

    @property
    def attempts(self) -> int:
        return self._attempts

    def increment_attempt(self) -> None:
        self._attempts += 1

    @property
    def max_attempts_to_delete(self) -> int:
        return self._max_attempts_to_delete

    @max_attempts_to_delete.setter
    def max_attempts_to_delete(self, value: int) -> None:
        if value < 1:
            raise ValueError("The number of attempts to delete cannot be less than one.")
        self._max_attempts_to_delete = value

    def is_exceeded_attempts(self) -> bool:
        """True once every allowed attempt has been used."""
        return self._attempts >= self._max_attempts_to_delete

    @property
    def attempt_delay(self) -> float:
        return self._attempt_delay

    @attempt_delay.setter
    def attempt_delay(self, seconds: float) -> None:
        if not isinstance(seconds, Real) or isinstance(seconds, bool):
            raise ValueError("The attempt delay must be a number.")
        if seconds < 0:
            raise ValueError("The attempt delay cannot be less than zero.")
        self._attempt_delay = seconds

    @property
    def auto_push(self) -> AutoPush:
        return self._auto_push

    def set_auto_push(self, enabled: bool, interval_seconds: int) -> None:
        self._auto_push = AutoPush(enabled=enabled, interval_seconds=interval_seconds)

    @property
    def auto_push_interval(self) -> int | None:
        """Release delay for auto-push jobs, None when auto-push is off."""
        if not self._auto_push.enabled:
            return None
        return self._auto_push.interval_seconds

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def operation_made(self) -> Operation | None:
        """The latest operation attempted on the job."""
        return self._operation_made

    def is_exists(self) -> bool:
        """Whether the job exists (or existed) on the server."""
        return isinstance(self._job_id, int) and self._job_id > 0

    def is_deleted(self) -> bool:
        return self._state == JobState.DELETED

    def is_released(self) -> bool:
        return self._state == JobState.RELEASED

    def is_buried(self) -> bool:
        return self._state == JobState.BURIED

    def _can_transition(self, target: JobState) -> bool:
        return target in JOB_TRANSITIONS[self._state]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def get_messages(self, field: str | None = None) -> list[Message]:
        """
        Messages attached to the job.

        Args:
            field: Only return messages about this field.
        """
        if field:
            return [message for message in self._messages if message.field == field]
        return list(self._messages)

    def append_message(self, message: Message) -> None:
        self._messages.append(message)

    def validation_has_failed(self) -> bool:
        return len(self._messages) > 0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def fire_event(self, event_name: str, data: dict[str, Any] | None = None) -> None:
        """Call the matching hook method, then notify the dispatcher."""
        hook = getattr(self, _hook_name(event_name), None)
        if callable(hook):
            hook()

        if self._events is not None:
            self._events.fire(f"{EVENT_NAMESPACE_JOB}:{event_name}", self, data)

    def fire_event_cancel(
        self,
        event_name: str,
        data: dict[str, Any] | None = None,
        call_hook: bool = True,
    ) -> bool:
        """
        Like fire_event(), but the hook or a listener may cancel by returning False.

        Returns:
            False if the operation was cancelled.
        """
        if call_hook:
            hook = getattr(self, _hook_name(event_name), None)
            if callable(hook) and hook() is False:
                return False

        if self._events is not None:
            allowed = self._events.fire(
                f"{EVENT_NAMESPACE_JOB}:{event_name}", self, data, cancelable=True
            )
            if not allowed:
                return False

        return True

    def _cancel_operation(self) -> None:
        """Fire the not* event of the current operation."""
        if self._operation_made is not None:
            self.fire_event(_CANCEL_EVENTS[self._operation_made])

    def _reject(self, target: JobState) -> bool:
        """Record an illegal transition; returns False for convenience."""
        message = _REJECTIONS.get(
            self._state, f"Cannot move a {self._state} job to {target}."
        )
        self.append_message(Message(message))
        logger.debug(
            "Rejected job operation",
            extra={
                "job_id": self._job_id,
                "operation": self._operation_made,
                "state": self._state,
            },
        )
        self._cancel_operation()
        return False

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def send(self, options: SendOptions | dict[str, Any] | None = None) -> bool:
        """
        Put the job into its queue.

        Args:
            options: priority/delay/ttr overrides for this send.

        Returns:
            True if the server stored the job and assigned an id.
        """
        self._operation_made = Operation.SEND

        if not self.fire_event_cancel(EVENT_BEFORE_SEND):
            self._cancel_operation()
            return False

        if self.is_exists():
            self.append_message(
                Message("You can not send an existing (existed) task to the queue.")
            )
            self._cancel_operation()
            return False

        if not self._pre_send():
            return False

        queue = self.full_queue_name
        with create_span(SPAN_SEND_JOB, queue=queue, job_type=self.job_type):
            job_id = await self.connection.send(
                self.snapshot(), queue, self._send_options(options)
            )

        if job_id is None:
            self._cancel_operation()
            return False

        self.job_id = job_id
        self.fire_event(EVENT_AFTER_SEND)

        logger.info(
            "Job sent",
            extra={"job_id": job_id, "queue": queue, "job_type": self.job_type},
        )
        return True

    def _pre_send(self) -> bool:
        if not self.fire_event_cancel(EVENT_BEFORE_VALIDATION_ON_SEND):
            self._cancel_operation()
            return False

        messages = list(self.validation() or [])

        # validation() is the hook for this event; do not call it twice
        if not self.fire_event_cancel(EVENT_VALIDATION, call_hook=False):
            self._cancel_operation()
            return False

        if messages:
            for message in messages:
                self.append_message(message)
            self.fire_event(EVENT_ON_VALIDATION_FAILS)
            self._cancel_operation()
            return False

        if not self.fire_event_cancel(EVENT_AFTER_VALIDATION_ON_SEND):
            self._cancel_operation()
            return False

        return True

    def _send_options(self, options: SendOptions | dict[str, Any] | None) -> SendOptions:
        """Per-send overrides, falling back to the job's own values."""
        priority, delay, ttr = merge_send_options(
            options, self._priority, self._delay, self._ttr
        )
        return SendOptions(priority=priority, delay=delay, ttr=ttr)

    async def delete(self) -> bool:
        """
        Remove the job from the queue.

        Returns:
            True if deleted. A job the server no longer knows counts as deleted.
        """
        self._operation_made = Operation.DELETE

        if not self.fire_event_cancel(EVENT_BEFORE_DELETE):
            self._cancel_operation()
            return False

        if not self._can_transition(JobState.DELETED):
            return self._reject(JobState.DELETED)

        if not await self.connection.delete(self._job_id):
            self._cancel_operation()
            return False

        self._state = JobState.DELETED
        get_metrics().record_job_deleted(self.full_queue_name)
        self.fire_event(EVENT_AFTER_DELETE)
        return True

    async def release(self, delay: int | None = None, priority: int | None = None) -> bool:
        """
        Return the reserved job to its queue.

        Args:
            delay: Seconds before it becomes ready again. Defaults to the job's delay.
            priority: New priority. Defaults to the job's priority.
        """
        self._operation_made = Operation.RELEASE

        if not self.fire_event_cancel(EVENT_BEFORE_RELEASE):
            self._cancel_operation()
            return False

        if not self._can_transition(JobState.RELEASED):
            return self._reject(JobState.RELEASED)

        if delay is None:
            delay = self._delay
        if priority is None:
            priority = self._priority

        if not await self.connection.release(self._job_id, priority, delay):
            self._cancel_operation()
            return False

        self._state = JobState.RELEASED
        get_metrics().record_job_released(self.full_queue_name)
        self.fire_event(EVENT_AFTER_RELEASE)
        return True

    async def bury(self, priority: int | None = None) -> bool:
        """
        Hold the reserved job aside until it is kicked.

        Args:
            priority: Priority once kicked. Defaults to the job's priority.
        """
        self._operation_made = Operation.BURY

        if not self.fire_event_cancel(EVENT_BEFORE_BURY):
            self._cancel_operation()
            return False

        if not self._can_transition(JobState.BURIED):
            return self._reject(JobState.BURIED)

        if priority is None:
            priority = self._priority

        if not await self.connection.bury(self._job_id, priority):
            self._cancel_operation()
            return False

        self._state = JobState.BURIED
        self.fire_event(EVENT_AFTER_BURY)
        return True

    async def get_next_job(self) -> "Job | None":
        """
        Reserve the next ready job from this job's queue.

        The reserved job shares this job's event dispatcher.
        """
        job = await self.connection.get_next_job(self.full_queue_name)
        if job is not None and job.events is None:
            job.events = self._events
        return job

    async def get_total_jobs_in_queue(self) -> int:
        return await self.connection.get_total_jobs_in_queue(self.full_queue_name)

    # ------------------------------------------------------------------
    # Snapshot / rehydrate
    # ------------------------------------------------------------------

    def snapshot(self) -> JobSnapshot:
        """Pure data view of the job used as its wire body."""
        return JobSnapshot(
            job_type=self.job_type,
            job_name=self._job_name,
            queue_name=self._queue_name,
            queue_prefix=self._queue_prefix,
            priority=self._priority,
            delay=self._delay,
            ttr=self._ttr,
            attempts=self._attempts,
            max_attempts_to_delete=self._max_attempts_to_delete,
            attempt_delay=self._attempt_delay,
            auto_push=self._auto_push.model_copy(),
            payload=self.payload,
        )

    def apply_snapshot(self, snapshot: JobSnapshot) -> None:
        """Copy the data fields of a snapshot onto this job."""
        self._job_type = snapshot.job_type
        self._job_name = snapshot.job_name
        self._queue_name = snapshot.queue_name
        self._queue_prefix = snapshot.queue_prefix
        self._priority = snapshot.priority
        self._delay = snapshot.delay
        self._ttr = snapshot.ttr
        self._attempts = snapshot.attempts
        self._max_attempts_to_delete = snapshot.max_attempts_to_delete
        self._attempt_delay = snapshot.attempt_delay
        self._auto_push = snapshot.auto_push.model_copy()
        self.payload = snapshot.payload

    def rehydrate(
        self,
        job_id: int,
        connection: "Adapter",
        events: EventDispatcher | None = None,
    ) -> None:
        """Bind live references to a job rebuilt from a reservation."""
        self._job_id = job_id
        self._connection = connection
        if events is not None:
            self._events = events
        self._state = JobState.RESERVED

    @classmethod
    def from_snapshot(
        cls,
        snapshot: JobSnapshot,
        job_id: int | None = None,
        connection: "Adapter | None" = None,
        events: EventDispatcher | None = None,
    ) -> "Job":
        """
        Build a job of this class from a snapshot.

        With a job id the job is considered reserved; without one it is a new,
        unsent copy.
        """
        job = cls(connection=connection, events=events)
        job.apply_snapshot(snapshot)
        if job_id is not None and connection is not None:
            job.rehydrate(job_id, connection, events)
        return job

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(job_id={self._job_id}, "
            f"queue='{self.full_queue_name}', state={self._state.value}, "
            f"attempts={self._attempts})>"
        )
