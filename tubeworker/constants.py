"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import IntEnum, StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - NEW -> SENT (put accepted by the server)
    - SENT -> DELETED (producer removes its own job)
    - RESERVED -> RELEASED (returned to the tube, e.g. auto-push)
    - RESERVED -> DELETED (handled, or attempts exhausted)
    - RESERVED -> BURIED (held aside until kicked)

    RELEASED, DELETED and BURIED are terminal for an in-memory job; the next
    reservation of the same server job produces a new object in RESERVED.
    """

    NEW = "new"
    SENT = "sent"
    RESERVED = "reserved"
    RELEASED = "released"
    DELETED = "deleted"
    BURIED = "buried"


JOB_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.NEW: frozenset({JobState.SENT}),
    JobState.SENT: frozenset({JobState.DELETED}),
    JobState.RESERVED: frozenset(
        {JobState.RELEASED, JobState.DELETED, JobState.BURIED}
    ),
    JobState.RELEASED: frozenset(),
    JobState.DELETED: frozenset(),
    JobState.BURIED: frozenset(),
}


class Operation(StrEnum):
    """Operations a job can perform against the queue."""

    SEND = "send"
    DELETE = "delete"
    RELEASE = "release"
    BURY = "bury"


class HandlingStatus(StrEnum):
    """Outcome of a single handle() attempt."""

    SUCCESS = "success"
    FAILED = "failed"


class ExitCode(IntEnum):
    """Process exit statuses observed by supervisors."""

    OK = 0
    DEADLINE_EXCEEDED = 1
    MEMORY_LIMIT = 12
    MALFORMED_JOB = 65  # EX_DATAERR


# Default values
DEFAULT_TUBE = "default"
DEFAULT_PRIORITY = 100
DEFAULT_DELAY = 0
DEFAULT_TTR = 60
DEFAULT_MAX_ATTEMPTS_TO_DELETE = 1

# Wire protocol
CRLF = b"\r\n"
SERVER_ERROR_REPLIES = frozenset(
    {"UNKNOWN_COMMAND", "BAD_FORMAT", "OUT_OF_MEMORY", "INTERNAL_ERROR", "JOB_TOO_BIG"}
)

# Job events (dispatched as "job:<name>")
EVENT_NAMESPACE_JOB = "job"
EVENT_BEFORE_SEND = "beforeSend"
EVENT_AFTER_SEND = "afterSend"
EVENT_NOT_SENT = "notSent"
EVENT_BEFORE_VALIDATION_ON_SEND = "beforeValidationOnSend"
EVENT_VALIDATION = "validation"
EVENT_ON_VALIDATION_FAILS = "onValidationFails"
EVENT_AFTER_VALIDATION_ON_SEND = "afterValidationOnSend"
EVENT_BEFORE_DELETE = "beforeDelete"
EVENT_AFTER_DELETE = "afterDelete"
EVENT_NOT_DELETED = "notDeleted"
EVENT_BEFORE_RELEASE = "beforeRelease"
EVENT_AFTER_RELEASE = "afterRelease"
EVENT_NOT_RELEASED = "notReleased"
EVENT_BEFORE_BURY = "beforeBury"
EVENT_AFTER_BURY = "afterBury"
EVENT_NOT_BURIED = "notBuried"

# Worker events
EVENT_NAMESPACE_WORKER = "jobWorker"
WORKER_BEFORE_HANDLING_QUEUE = "jobWorker:beforeHandlingQueue"
WORKER_BEFORE_HANDLING_JOB = "jobWorker:beforeHandlingJob"
WORKER_AFTER_TRYING = "jobWorker:afterTrying"
WORKER_START_JOB_HANDLING = "jobWorker:startJobHandling"
WORKER_END_JOB_HANDLING = "jobWorker:endJobHandling"
WORKER_BEFORE_TRYING = "jobWorker:beforeTrying"
WORKER_AFTER_HANDLING_JOB = "jobWorker:afterHandlingJob"
WORKER_ERROR = "jobWorker:error"
WORKER_STOP = "jobWorker:stop"

# Metrics names
METRIC_QUEUE_DEPTH = "tube_queue_depth"
METRIC_JOBS_SENT = "tube_jobs_sent_total"
METRIC_JOBS_RESERVED = "tube_jobs_reserved_total"
METRIC_JOBS_HANDLED = "tube_jobs_handled_total"
METRIC_JOBS_DELETED = "tube_jobs_deleted_total"
METRIC_JOBS_RELEASED = "tube_jobs_released_total"
METRIC_TRANSPORT_ERRORS = "tube_transport_errors_total"
METRIC_HANDLE_DURATION = "tube_job_handle_duration_seconds"

# Trace span names
SPAN_HANDLE_JOB = "handle_job"
SPAN_SEND_JOB = "send_job"
