"""
Base class for queue adapters.

Holds the scheduling defaults used when a job or a call does not provide its
own values, and declares the operations every adapter implements.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from tubeworker.constants import DEFAULT_DELAY, DEFAULT_PRIORITY, DEFAULT_TTR, DEFAULT_TUBE
from tubeworker.types.job import ReservedJob, SendOptions, merge_send_options

if TYPE_CHECKING:
    from tubeworker.jobs.job import Job


class Adapter(ABC):
    """Abstract queue adapter."""

    def __init__(
        self,
        priority: int = DEFAULT_PRIORITY,
        delay: int = DEFAULT_DELAY,
        ttr: int = DEFAULT_TTR,
        queue: str = DEFAULT_TUBE,
    ):
        self._priority = DEFAULT_PRIORITY
        self._delay = DEFAULT_DELAY
        self._ttr = DEFAULT_TTR
        self._queue = DEFAULT_TUBE

        self.priority = priority
        self.delay = delay
        self.ttr = ttr
        self.queue = queue

    @property
    def priority(self) -> int:
        """Default priority for put/release/bury."""
        return self._priority

    @priority.setter
    def priority(self, value: int) -> None:
        if value < 0:
            raise ValueError("Priority cannot be less than zero.")
        self._priority = value

    @property
    def delay(self) -> int:
        """Default delay in seconds for put/release."""
        return self._delay

    @delay.setter
    def delay(self, value: int) -> None:
        if value < 0:
            raise ValueError("Delay cannot be less than zero.")
        self._delay = value

    @property
    def ttr(self) -> int:
        """Default time-to-run in seconds for put."""
        return self._ttr

    @ttr.setter
    def ttr(self, value: int) -> None:
        if value < 0:
            raise ValueError("Time to run cannot be less than zero.")
        self._ttr = value

    @property
    def queue(self) -> str:
        """Default queue name."""
        return self._queue

    @queue.setter
    def queue(self, value: str) -> None:
        if value == "":
            raise ValueError("The queue name cannot be empty.")
        self._queue = value

    def resolve_options(
        self, options: SendOptions | dict[str, Any] | None = None
    ) -> tuple[int, int, int]:
        """
        Merge per-call options with the adapter defaults.

        Missing or negative values fall back to the defaults.

        Returns:
            Tuple of (priority, delay, ttr).
        """
        return merge_send_options(options, self._priority, self._delay, self._ttr)

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection to the server."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection. Idempotent."""

    @abstractmethod
    async def choose_queue(self, name: str) -> bool:
        """Select the queue used by subsequent puts."""

    @abstractmethod
    async def watch_queue(self, name: str) -> bool:
        """Add a queue to the reservation watch list."""

    @abstractmethod
    async def ignore_queue(self, name: str) -> bool:
        """Remove a queue from the reservation watch list."""

    @abstractmethod
    async def send(
        self,
        data: Any,
        queue: str,
        options: SendOptions | dict[str, Any] | None = None,
    ) -> int | None:
        """Put ``data`` into ``queue``. Returns the job id, or None if refused."""

    @abstractmethod
    async def reserve(self, timeout: int | None = None) -> ReservedJob | None:
        """Claim the next ready job from the watched queues."""

    @abstractmethod
    async def release(
        self,
        job_id: int,
        priority: int | None = None,
        delay: int | None = None,
    ) -> bool:
        """Return a reserved job to its queue."""

    @abstractmethod
    async def delete(self, job_id: int) -> bool:
        """Remove a job. A job that is already gone counts as deleted."""

    @abstractmethod
    async def bury(self, job_id: int, priority: int | None = None) -> bool:
        """Hold a reserved job aside until it is kicked."""

    @abstractmethod
    async def kick(self, job_id: int) -> bool:
        """Move a buried or delayed job back to the ready state."""

    @abstractmethod
    async def stats_queue(self, name: str) -> dict[str, Any]:
        """Server statistics for a queue. Empty when the queue is unknown."""

    @abstractmethod
    async def get_total_jobs_in_queue(self, name: str) -> int:
        """Number of jobs the server has seen for a queue; 0 when unknown."""

    @abstractmethod
    async def get_next_job(self, queue: str) -> "Job | None":
        """Reserve the next ready job of ``queue`` without blocking."""

    async def __aenter__(self) -> "Adapter":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()
