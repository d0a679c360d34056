"""
Beanstalk protocol adapter.

Encodes queue operations as beanstalkd commands and maps status replies to
results. Expected negative replies (NOT_FOUND on bury, TIMED_OUT on reserve,
JOB_TOO_BIG on put, ...) become ``None``/``False``; any other unexpected status
raises ProtocolError.
"""

import logging
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import ValidationError

from tubeworker.adapter.base import Adapter
from tubeworker.config import get_settings
from tubeworker.constants import DEFAULT_TUBE
from tubeworker.errors import (
    ConnectionLost,
    MalformedJobError,
    ProtocolError,
    ServerError,
    TransportError,
    UnknownJobTypeError,
)
from tubeworker.jobs.registry import JobRegistry
from tubeworker.observability.metrics import get_metrics
from tubeworker.transport.connection import Connection
from tubeworker.types.job import JobSnapshot, ReservedJob, SendOptions

if TYPE_CHECKING:
    from tubeworker.jobs.job import Job

logger = logging.getLogger(__name__)

# Replies to put that mean "not stored" rather than a protocol failure
_PUT_REFUSED = frozenset({"EXPECTED_CRLF", "JOB_TOO_BIG", "DRAINING"})


def _parse_status(line: str) -> tuple[str, list[str]]:
    parts = line.split()
    if not parts:
        return "", []
    return parts[0], parts[1:]


def _parse_int(command: str, line: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ProtocolError(command, line) from e


class BeanstalkAdapter(Adapter):
    """
    Adapter for a beanstalkd server over a single TCP connection.

    Tracks the tube used for puts and the set of watched tubes so they can be
    restored after a reconnect. A fresh connection starts with the server
    defaults: using ``default`` and watching ``default``.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        persistent: bool | None = None,
        connect_timeout: float | None = None,
        read_timeout: float | None = None,
        registry: JobRegistry | None = None,
        priority: int | None = None,
        delay: int | None = None,
        ttr: int | None = None,
        queue: str | None = None,
    ):
        """
        Initialize the adapter. Missing values are taken from settings.

        Args:
            host: Server host.
            port: Server port.
            persistent: Keep the socket alive with TCP keepalive.
            connect_timeout: Seconds allowed for connecting.
            read_timeout: Seconds allowed for a reply. None blocks.
            registry: Job types used to rebuild reserved jobs.
            priority: Default priority.
            delay: Default delay in seconds.
            ttr: Default time-to-run in seconds.
            queue: Default queue name.
        """
        settings = get_settings()

        super().__init__(
            priority=settings.queue_default_priority if priority is None else priority,
            delay=settings.queue_default_delay if delay is None else delay,
            ttr=settings.queue_default_ttr if ttr is None else ttr,
            queue=queue or settings.queue_default_tube,
        )

        self._connection = Connection(
            host=host or settings.queue_host,
            port=port or settings.queue_port,
            persistent=settings.queue_persistent if persistent is None else persistent,
            connect_timeout=connect_timeout or settings.queue_connect_timeout_seconds,
            read_timeout=read_timeout or settings.queue_read_timeout_seconds,
            max_line_length=settings.queue_max_line_length,
        )

        self.registry = registry if registry is not None else JobRegistry()

        self._using = DEFAULT_TUBE
        self._watching: set[str] = {DEFAULT_TUBE}
        self._metrics = get_metrics()

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def host(self) -> str:
        return self._connection.host

    @property
    def port(self) -> int:
        return self._connection.port

    @property
    def persistent(self) -> bool:
        return self._connection.persistent

    @property
    def using(self) -> str:
        """Tube currently selected for puts."""
        return self._using

    @property
    def watching(self) -> frozenset[str]:
        """Tubes currently watched for reservation."""
        return frozenset(self._watching)

    async def connect(self) -> None:
        await self._connection.connect()
        self._reset_tube_state()

    async def disconnect(self) -> None:
        await self._connection.disconnect()
        self._reset_tube_state()

    def _reset_tube_state(self) -> None:
        self._using = DEFAULT_TUBE
        self._watching = {DEFAULT_TUBE}

    async def _roundtrip(self, command: str, body: bytes | None = None) -> str:
        if not self._connection.is_connected:
            await self._reconnect()

        await self._connection.write(command, body)
        return await self._connection.read()

    async def _command(
        self,
        command: str,
        body: bytes | None = None,
        retry: bool = True,
    ) -> str:
        """
        Send a command and read its status line.

        Every transport failure is counted here, once per failed roundtrip,
        under the command verb.

        Args:
            command: Command line without terminator.
            body: Optional body.
            retry: Replay once on a fresh connection if the connection drops.
                Only safe for commands whose replay cannot duplicate work.
        """
        verb = command.split(" ", 1)[0]
        try:
            return await self._roundtrip(command, body)
        except ConnectionLost:
            self._metrics.record_transport_error(verb)
            if not retry:
                raise
        except TransportError:
            self._metrics.record_transport_error(verb)
            raise

        logger.warning(
            "Connection lost, reconnecting",
            extra={"command": verb},
        )
        try:
            return await self._roundtrip(command, body)
        except TransportError:
            self._metrics.record_transport_error(verb)
            raise

    async def _reconnect(self) -> None:
        """
        Open a new socket and restore the used and watched tubes.

        After an explicit disconnect() the state is already back to the server
        defaults, so nothing is replayed.
        """
        using, watching = self._using, set(self._watching)
        await self.connect()

        if using != DEFAULT_TUBE:
            await self._roundtrip(f"use {using}")
            self._using = using

        for tube in sorted(watching - {DEFAULT_TUBE}):
            await self._roundtrip(f"watch {tube}")
            self._watching.add(tube)

        if DEFAULT_TUBE not in watching:
            await self._roundtrip(f"ignore {DEFAULT_TUBE}")
            self._watching.discard(DEFAULT_TUBE)

    async def choose_queue(self, name: str) -> bool:
        command = f"use {name}"
        line = await self._command(command)
        status, _ = _parse_status(line)

        if status != "USING":
            raise ProtocolError(command, line)

        self._using = name
        return True

    async def watch_queue(self, name: str) -> bool:
        command = f"watch {name}"
        line = await self._command(command)
        status, _ = _parse_status(line)

        if status != "WATCHING":
            raise ProtocolError(command, line)

        self._watching.add(name)
        return True

    async def ignore_queue(self, name: str) -> bool:
        command = f"ignore {name}"
        line = await self._command(command)
        status, _ = _parse_status(line)

        if status == "NOT_IGNORED":
            return False
        if status != "WATCHING":
            raise ProtocolError(command, line)

        self._watching.discard(name)
        return True

    async def send(
        self,
        data: Any,
        queue: str,
        options: SendOptions | dict[str, Any] | None = None,
    ) -> int | None:
        """
        Put ``data`` into ``queue``.

        Args:
            data: A Job, a JobSnapshot, or raw bytes/str.
            queue: Destination tube.
            options: priority/delay/ttr overrides.

        Returns:
            The server-assigned job id, or None when the server refused it.
        """
        await self.choose_queue(queue)
        return await self.put(data, options)

    async def put(
        self,
        data: Any,
        options: SendOptions | dict[str, Any] | None = None,
    ) -> int | None:
        """Put ``data`` into the currently used tube."""
        priority, delay, ttr = self.resolve_options(options)
        body = self._encode(data)
        command = f"put {priority} {delay} {ttr} {len(body)}"

        try:
            line = await self._command(command, body, retry=False)
        except ServerError as e:
            if e.status != "JOB_TOO_BIG":
                raise
            line = e.status

        status, args = _parse_status(line)

        if status in ("INSERTED", "BURIED") and len(args) == 1:
            job_id = _parse_int(command, line, args[0])
            self._metrics.record_job_sent(self._using)
            logger.debug(
                "Job stored",
                extra={"job_id": job_id, "queue": self._using, "status": status},
            )
            return job_id

        if status in _PUT_REFUSED:
            logger.warning(
                "Server refused job",
                extra={"queue": self._using, "status": status, "bytes": len(body)},
            )
            return None

        raise ProtocolError(command, line)

    async def reserve(self, timeout: int | None = None) -> ReservedJob | None:
        """
        Claim the next ready job from the watched tubes.

        Args:
            timeout: Seconds to wait; 0 polls; None blocks until a job arrives.

        Returns:
            The reserved job, or None if none became ready in time.

        Raises:
            MalformedJobError: The body is not a job snapshot. The job has been
                deleted from the server.
        """
        if timeout is None:
            command = "reserve"
        else:
            command = f"reserve-with-timeout {max(int(timeout), 0)}"

        line = await self._command(command, retry=False)
        status, args = _parse_status(line)

        if status in ("TIMED_OUT", "DEADLINE_SOON"):
            return None
        if status != "RESERVED" or len(args) != 2:
            raise ProtocolError(command, line)

        job_id = _parse_int(command, line, args[0])
        size = _parse_int(command, line, args[1])
        body = await self._connection.read(size)

        try:
            snapshot = JobSnapshot.decode(body)
        except ValidationError as e:
            await self.delete(job_id)
            logger.error(
                "Deleted malformed job",
                extra={"job_id": job_id, "bytes": size},
            )
            raise MalformedJobError(job_id, "body is not a job snapshot") from e

        return ReservedJob(job_id=job_id, snapshot=snapshot)

    async def release(
        self,
        job_id: int,
        priority: int | None = None,
        delay: int | None = None,
    ) -> bool:
        if priority is None:
            priority = self._priority
        if delay is None:
            delay = self._delay

        command = f"release {job_id} {priority} {delay}"
        line = await self._command(command)
        status, _ = _parse_status(line)

        if status != "RELEASED":
            raise ProtocolError(command, line)
        return True

    async def delete(self, job_id: int) -> bool:
        command = f"delete {job_id}"
        line = await self._command(command)
        status, _ = _parse_status(line)

        if status not in ("DELETED", "NOT_FOUND"):
            raise ProtocolError(command, line)
        return True

    async def bury(self, job_id: int, priority: int | None = None) -> bool:
        if priority is None or priority < 0:
            priority = self._priority

        command = f"bury {job_id} {priority}"
        line = await self._command(command)
        status, _ = _parse_status(line)

        if status == "BURIED":
            return True
        if status == "NOT_FOUND":
            return False
        raise ProtocolError(command, line)

    async def kick(self, job_id: int) -> bool:
        command = f"kick-job {job_id}"
        line = await self._command(command)
        status, _ = _parse_status(line)

        if status in ("KICKED", "BURIED"):
            return True
        if status == "NOT_FOUND":
            return False
        raise ProtocolError(command, line)

    async def stats_queue(self, name: str) -> dict[str, Any]:
        """
        Statistics for a tube as reported by ``stats-tube``.

        Returns:
            Mapping of stat name to value, empty if the tube does not exist.
        """
        command = f"stats-tube {name}"
        line = await self._command(command)
        status, args = _parse_status(line)

        if status == "NOT_FOUND":
            return {}
        if status != "OK" or len(args) != 1:
            raise ProtocolError(command, line)

        body = await self._connection.read(_parse_int(command, line, args[0]))

        try:
            stats = yaml.safe_load(body)
        except yaml.YAMLError as e:
            raise ProtocolError(command, "stats body is not YAML") from e

        if not isinstance(stats, dict):
            raise ProtocolError(command, "stats body is not a mapping")
        return stats

    async def get_total_jobs_in_queue(self, name: str) -> int:
        stats = await self.stats_queue(name)
        total = int(stats.get("total-jobs", 0))
        self._metrics.update_queue_depth(name, total)
        return total

    async def get_next_job(self, queue: str) -> "Job | None":
        """
        Reserve the next ready job of ``queue`` without blocking.

        Only ``queue`` stays on the watch list, so jobs from other tubes are
        never picked up by mistake.

        Returns:
            The rebuilt job bound to this adapter, or None if nothing is ready.

        Raises:
            MalformedJobError: The job could not be rebuilt: bad body, unknown
                type or a failing factory. The job has been deleted.
        """
        await self.watch_queue(queue)
        for tube in sorted(self._watching - {queue}):
            await self.ignore_queue(tube)

        reserved = await self.reserve(timeout=0)
        if reserved is None:
            return None

        self._metrics.record_job_reserved(queue)
        return await self._rebuild(reserved)

    async def _rebuild(self, reserved: ReservedJob) -> "Job":
        job_type = reserved.snapshot.job_type

        if job_type not in self.registry:
            await self.delete(reserved.job_id)
            logger.error(
                "Deleted job of unknown type",
                extra={"job_id": reserved.job_id, "job_type": job_type},
            )
            raise UnknownJobTypeError(reserved.job_id, job_type)

        try:
            job = self.registry.create(job_type)
            job.apply_snapshot(reserved.snapshot)
            job.rehydrate(job_id=reserved.job_id, connection=self)
        except Exception as e:
            await self.delete(reserved.job_id)
            logger.error(
                f"Deleted job that could not be rebuilt: {e}",
                extra={"job_id": reserved.job_id, "job_type": job_type},
            )
            raise MalformedJobError(
                reserved.job_id, f"cannot rebuild job of type '{job_type}': {e}"
            ) from e

        return job

    @staticmethod
    def _encode(data: Any) -> bytes:
        if isinstance(data, JobSnapshot):
            return data.encode()
        if isinstance(data, bytes):
            return data
        if isinstance(data, str):
            return data.encode("utf-8")
        if hasattr(data, "snapshot"):
            return data.snapshot().encode()
        raise TypeError(f"Cannot encode {type(data).__name__} as a job body")
