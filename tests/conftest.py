"""
Pytest configuration and shared fixtures.

Provides an in-process fake beanstalkd so transport, adapter and worker tests
run over real sockets without an external server.
"""

import asyncio
import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass

import pytest
import pytest_asyncio

# Keep settings deterministic regardless of the developer's environment
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from tubeworker.adapter.beanstalk import BeanstalkAdapter  # noqa: E402
from tubeworker.config import Settings, get_settings  # noqa: E402
from tubeworker.events import EventDispatcher  # noqa: E402
from tubeworker.jobs.registry import JobRegistry  # noqa: E402

CRLF = b"\r\n"


@dataclass
class FakeJob:
    """A job as stored by the fake server."""

    job_id: int
    tube: str
    priority: int
    ttr: int
    body: bytes
    state: str = "ready"
    ready_at: float = 0.0
    reserved_by: int | None = None
    reserved_until: float = 0.0


@dataclass
class ClientState:
    """Per-connection tube selection."""

    client_id: int
    using: str = "default"
    watching: set[str] | None = None

    def __post_init__(self) -> None:
        if self.watching is None:
            self.watching = {"default"}


class FakeBeanstalkd:
    """
    Minimal beanstalkd speaking the subset of the protocol the client uses.

    Time is simulated: delays and TTRs only elapse through advance(). Replies
    queued with inject() are sent instead of the real reply to the next
    commands, and ``silent`` makes the server swallow commands.
    """

    def __init__(self, max_job_size: int = 65535):
        self.max_job_size = max_job_size
        self.now = 0.0
        self.draining = False
        self.silent = False
        self.jobs: dict[int, FakeJob] = {}
        self.total_jobs: dict[str, int] = {}
        self.commands: list[str] = []
        self.clients: list[ClientState] = []
        self.port = 0

        self._next_id = 1
        self._injected: list[bytes] = []
        self._writers: list[asyncio.StreamWriter] = []
        self._server: asyncio.AbstractServer | None = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._serve, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        self.drop_connections()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def inject(self, reply: bytes) -> None:
        self._injected.append(reply)

    def drop_connections(self) -> None:
        for writer in self._writers:
            writer.close()
        self._writers.clear()

    def put_raw(self, tube: str, body: bytes, priority: int = 100, ttr: int = 60) -> int:
        """Store a job directly, bypassing the protocol."""
        job = FakeJob(self._next_id, tube, priority, max(ttr, 1), body)
        self._next_id += 1
        self.jobs[job.job_id] = job
        self.total_jobs[tube] = self.total_jobs.get(tube, 0) + 1
        return job.job_id

    def jobs_in(self, tube: str, state: str | None = None) -> list[FakeJob]:
        self._tick()
        return [
            job
            for job in self.jobs.values()
            if job.tube == tube and (state is None or job.state == state)
        ]

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        client = ClientState(client_id=len(self.clients) + 1)
        self.clients.append(client)
        self._writers.append(writer)

        try:
            while True:
                line = await reader.readuntil(CRLF)
                command = line[:-2].decode("ascii")
                self.commands.append(command)
                parts = command.split()

                body = None
                if parts and parts[0] == "put" and len(parts) == 5 and parts[4].isdigit():
                    body = await reader.readexactly(int(parts[4]) + 2)

                if self.silent:
                    continue

                if self._injected:
                    reply = self._injected.pop(0)
                else:
                    reply = self._dispatch(client, parts, body)

                writer.write(reply)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self._release_reservations(client.client_id)
            writer.close()

    def _tick(self) -> None:
        for job in self.jobs.values():
            if job.state == "delayed" and self.now >= job.ready_at:
                job.state = "ready"
            elif job.state == "reserved" and self.now >= job.reserved_until:
                job.state = "ready"
                job.reserved_by = None

    def _release_reservations(self, client_id: int) -> None:
        for job in self.jobs.values():
            if job.state == "reserved" and job.reserved_by == client_id:
                job.state = "ready"
                job.reserved_by = None

    def _tube_exists(self, tube: str) -> bool:
        referenced = any(
            client.using == tube or tube in client.watching for client in self.clients
        )
        has_jobs = any(job.tube == tube for job in self.jobs.values())
        if not (referenced or has_jobs):
            self.total_jobs.pop(tube, None)
            return False
        return True

    def _dispatch(self, client: ClientState, parts: list[str], body: bytes | None) -> bytes:
        self._tick()

        if not parts:
            return b"UNKNOWN_COMMAND\r\n"

        verb, args = parts[0], parts[1:]
        handler = getattr(self, "_cmd_" + verb.replace("-", "_"), None)
        if handler is None:
            return b"UNKNOWN_COMMAND\r\n"

        try:
            return handler(client, args, body)
        except (ValueError, IndexError):
            return b"BAD_FORMAT\r\n"

    def _cmd_use(self, client: ClientState, args: list[str], body: bytes | None) -> bytes:
        client.using = args[0]
        return f"USING {args[0]}\r\n".encode()

    def _cmd_watch(self, client: ClientState, args: list[str], body: bytes | None) -> bytes:
        client.watching.add(args[0])
        return f"WATCHING {len(client.watching)}\r\n".encode()

    def _cmd_ignore(self, client: ClientState, args: list[str], body: bytes | None) -> bytes:
        if client.watching == {args[0]}:
            return b"NOT_IGNORED\r\n"
        client.watching.discard(args[0])
        return f"WATCHING {len(client.watching)}\r\n".encode()

    def _cmd_put(self, client: ClientState, args: list[str], body: bytes | None) -> bytes:
        priority, delay, ttr, size = (int(arg) for arg in args)
        if body is None:
            raise ValueError("put without body")
        if self.draining:
            return b"DRAINING\r\n"
        if size > self.max_job_size:
            return b"JOB_TOO_BIG\r\n"
        if not body.endswith(CRLF):
            return b"EXPECTED_CRLF\r\n"

        job_id = self.put_raw(client.using, body[:-2], priority, ttr)
        if delay > 0:
            job = self.jobs[job_id]
            job.state = "delayed"
            job.ready_at = self.now + delay
        return f"INSERTED {job_id}\r\n".encode()

    def _reserve(self, client: ClientState) -> bytes:
        ready = [
            job
            for job in self.jobs.values()
            if job.state == "ready" and job.tube in client.watching
        ]
        if not ready:
            return b"TIMED_OUT\r\n"

        job = min(ready, key=lambda j: (j.priority, j.job_id))
        job.state = "reserved"
        job.reserved_by = client.client_id
        job.reserved_until = self.now + job.ttr
        return f"RESERVED {job.job_id} {len(job.body)}\r\n".encode() + job.body + CRLF

    def _cmd_reserve(self, client: ClientState, args: list[str], body: bytes | None) -> bytes:
        return self._reserve(client)

    def _cmd_reserve_with_timeout(
        self, client: ClientState, args: list[str], body: bytes | None
    ) -> bytes:
        int(args[0])
        return self._reserve(client)

    def _owned(self, client: ClientState, job_id: int) -> FakeJob | None:
        job = self.jobs.get(job_id)
        if job is None or job.state != "reserved" or job.reserved_by != client.client_id:
            return None
        return job

    def _cmd_delete(self, client: ClientState, args: list[str], body: bytes | None) -> bytes:
        job = self.jobs.get(int(args[0]))
        if job is None or (job.state == "reserved" and job.reserved_by != client.client_id):
            return b"NOT_FOUND\r\n"
        del self.jobs[job.job_id]
        return b"DELETED\r\n"

    def _cmd_release(self, client: ClientState, args: list[str], body: bytes | None) -> bytes:
        job_id, priority, delay = (int(arg) for arg in args)
        job = self._owned(client, job_id)
        if job is None:
            return b"NOT_FOUND\r\n"

        job.priority = priority
        job.reserved_by = None
        if delay > 0:
            job.state = "delayed"
            job.ready_at = self.now + delay
        else:
            job.state = "ready"
        return b"RELEASED\r\n"

    def _cmd_bury(self, client: ClientState, args: list[str], body: bytes | None) -> bytes:
        job_id, priority = (int(arg) for arg in args)
        job = self._owned(client, job_id)
        if job is None:
            return b"NOT_FOUND\r\n"

        job.priority = priority
        job.reserved_by = None
        job.state = "buried"
        return b"BURIED\r\n"

    def _cmd_kick_job(self, client: ClientState, args: list[str], body: bytes | None) -> bytes:
        job = self.jobs.get(int(args[0]))
        if job is None or job.state not in ("buried", "delayed"):
            return b"NOT_FOUND\r\n"
        job.state = "ready"
        return b"KICKED\r\n"

    def _cmd_stats_tube(self, client: ClientState, args: list[str], body: bytes | None) -> bytes:
        tube = args[0]
        if not self._tube_exists(tube):
            return b"NOT_FOUND\r\n"

        jobs = [job for job in self.jobs.values() if job.tube == tube]

        def count(state: str) -> int:
            return sum(1 for job in jobs if job.state == state)

        stats = (
            "---\n"
            f"name: {tube}\n"
            f"current-jobs-urgent: {sum(1 for j in jobs if j.state == 'ready' and j.priority < 1024)}\n"
            f"current-jobs-ready: {count('ready')}\n"
            f"current-jobs-reserved: {count('reserved')}\n"
            f"current-jobs-delayed: {count('delayed')}\n"
            f"current-jobs-buried: {count('buried')}\n"
            f"total-jobs: {self.total_jobs.get(tube, 0)}\n"
            f"current-using: {sum(1 for c in self.clients if c.using == tube)}\n"
            f"current-watching: {sum(1 for c in self.clients if tube in c.watching)}\n"
        ).encode()
        return f"OK {len(stats)}\r\n".encode() + stats + CRLF


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached per process; start each test from a clean cache."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        log_level="DEBUG",
        log_format="console",
        worker_idle_sleep_seconds=0.01,
        worker_pause_poll_seconds=0.01,
    )


@pytest_asyncio.fixture
async def server() -> AsyncGenerator[FakeBeanstalkd]:
    """Start a fake beanstalkd on a random port."""
    fake = FakeBeanstalkd()
    await fake.start()
    yield fake
    await fake.stop()


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def dispatcher() -> EventDispatcher:
    return EventDispatcher()


@pytest_asyncio.fixture
async def adapter(
    server: FakeBeanstalkd,
    registry: JobRegistry,
) -> AsyncGenerator[BeanstalkAdapter]:
    """Adapter connected to the fake server."""
    queue_adapter = BeanstalkAdapter(
        host="127.0.0.1",
        port=server.port,
        read_timeout=5.0,
        registry=registry,
    )
    yield queue_adapter
    await queue_adapter.disconnect()
