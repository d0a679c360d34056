"""
Exception hierarchy for queue operations.

Expected negative outcomes (a tube with nothing ready, a job that is already
gone) are not exceptions: the adapter reports them as ``None``/``False``.
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class TransportError(QueueError):
    """Network-level failure. Recoverable by reconnecting."""


class ConnectionRefused(TransportError):
    """The server refused the TCP connection."""


class TransportTimeout(TransportError):
    """Connecting to or reading from the server timed out."""


class ConnectionLost(TransportError):
    """The server closed the connection or the socket broke mid-command."""


class ServerError(TransportError):
    """The server replied with an error sentinel instead of a status line."""

    def __init__(self, status: str):
        super().__init__(f"Server replied {status}")
        self.status = status


class ProtocolError(QueueError):
    """
    Unexpected status word in a reply.

    Fatal to the current operation only; the connection stays usable.
    """

    def __init__(self, command: str, status: str):
        super().__init__(f"Unexpected reply to '{command}': {status}")
        self.command = command
        self.status = status


class MalformedJobError(QueueError):
    """
    A reserved job could not be turned back into a job.

    The job has been taken off the ready queue so it cannot block it.
    """

    def __init__(self, job_id: int, reason: str):
        super().__init__(f"Reserved job {job_id} is malformed: {reason}")
        self.job_id = job_id
        self.reason = reason


class UnknownJobTypeError(MalformedJobError):
    """A reserved job names a type missing from the registry. The job was deleted."""

    def __init__(self, job_id: int, job_type: str):
        super().__init__(job_id, f"unknown job type '{job_type}'")
        self.job_type = job_type


class WorkerError(QueueError):
    """The worker cannot start processing."""


class DeadlineExceeded(WorkerError):
    """A job ran past its time-to-run and the kill callback returned."""

    def __init__(self, seconds: float):
        super().__init__(f"Job exceeded its deadline of {seconds}s")
        self.seconds = seconds
