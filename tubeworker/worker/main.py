"""
Worker process for handling queue jobs.

The worker reserves jobs from a single queue one at a time, runs their
handle() under the job's time-to-run and settles each job by deleting or
releasing it according to the job's retry and auto-push settings.
"""

import asyncio
import logging
import os
import signal
import sys
import time
from collections.abc import Callable
from typing import Any, NoReturn

import psutil

from tubeworker.adapter.base import Adapter
from tubeworker.adapter.beanstalk import BeanstalkAdapter
from tubeworker.config import get_settings
from tubeworker.constants import (
    SPAN_HANDLE_JOB,
    WORKER_AFTER_HANDLING_JOB,
    WORKER_AFTER_TRYING,
    WORKER_BEFORE_HANDLING_JOB,
    WORKER_BEFORE_HANDLING_QUEUE,
    WORKER_BEFORE_TRYING,
    WORKER_END_JOB_HANDLING,
    WORKER_ERROR,
    WORKER_START_JOB_HANDLING,
    WORKER_STOP,
    ExitCode,
    HandlingStatus,
)
from tubeworker.errors import MalformedJobError, ProtocolError, TransportError, WorkerError
from tubeworker.events import EventDispatcher
from tubeworker.jobs.job import Job
from tubeworker.jobs.registry import JobRegistry
from tubeworker.observability.logging import (
    bind_context,
    flush_logging,
    setup_logging,
    unbind_context,
)
from tubeworker.observability.metrics import get_metrics, setup_metrics, start_metrics_server
from tubeworker.observability.tracing import create_span, setup_tracing
from tubeworker.worker.deadline import create_deadline

logger = logging.getLogger(__name__)

# Signal name -> Worker method name
_SIGNAL_ACTIONS = (
    ("SIGTERM", "stop"),
    ("SIGINT", "stop"),
    ("SIGUSR2", "pause"),
    ("SIGCONT", "resume"),
)


class Worker:
    """
    Job worker that reserves and handles jobs from one queue.

    Features:
    - One job in flight; FIFO as presented by the server
    - Retries in place with a per-job attempt delay
    - Auto-push jobs released back with their interval instead of deleted
    - Deadline per job (time-to-run); an overrun ends the process
    - Graceful stop on SIGTERM/SIGINT, pause on SIGUSR2, resume on SIGCONT
    - Stops on memory limit or after a number of handled jobs
    """

    def __init__(
        self,
        adapter: Adapter | None = None,
        registry: JobRegistry | None = None,
        events: EventDispatcher | None = None,
        memory_limit_mb: int | None = None,
        stop_after_handled_jobs: int | None = None,
        idle_sleep_seconds: float | None = None,
        pause_poll_seconds: float | None = None,
        enforce_deadline: bool | None = None,
        handle_signals: bool = True,
    ):
        """
        Initialize the worker. Missing values are taken from settings.

        Args:
            adapter: Queue adapter. Defaults to a BeanstalkAdapter from settings.
            registry: Job types the worker can rebuild. Shared with the adapter.
            events: Dispatcher for job and worker events.
            memory_limit_mb: Stop once the process RSS reaches this many MB.
            stop_after_handled_jobs: Stop after this many jobs were handled.
            idle_sleep_seconds: Pause between polls when the queue is empty.
            pause_poll_seconds: How often a paused worker checks for resume.
            enforce_deadline: Kill the process when a job overruns its TTR.
            handle_signals: Install SIGTERM/SIGINT/SIGUSR2/SIGCONT handlers.
        """
        settings = get_settings()

        if adapter is None:
            adapter = BeanstalkAdapter(registry=registry)
        elif registry is not None and hasattr(adapter, "registry"):
            adapter.registry = registry

        if registry is None:
            registry = getattr(adapter, "registry", None)
        if registry is None:
            registry = JobRegistry()

        self.adapter = adapter
        self.registry = registry
        self.events = events if events is not None else EventDispatcher()

        self.memory_limit_mb = (
            settings.worker_memory_limit_mb if memory_limit_mb is None else memory_limit_mb
        )
        self.stop_after_handled_jobs = (
            settings.worker_stop_after_handled_jobs
            if stop_after_handled_jobs is None
            else stop_after_handled_jobs
        )
        self.idle_sleep_seconds = (
            settings.worker_idle_sleep_seconds
            if idle_sleep_seconds is None
            else idle_sleep_seconds
        )
        self.pause_poll_seconds = (
            settings.worker_pause_poll_seconds
            if pause_poll_seconds is None
            else pause_poll_seconds
        )
        self.enforce_deadline = (
            settings.worker_enforce_deadline if enforce_deadline is None else enforce_deadline
        )
        self.handle_signals = handle_signals

        self._paused = False
        self._quit = False
        self._jobs_handled = 0
        self._installed_signals: list[int] = []
        self._proc = psutil.Process(os.getpid())
        self._metrics = get_metrics()
        self._deadline = create_deadline(
            lambda: self.kill(ExitCode.DEADLINE_EXCEEDED),
            enforce=self.enforce_deadline,
        )

    @property
    def memory_limit_mb(self) -> int:
        return self._memory_limit_mb

    @memory_limit_mb.setter
    def memory_limit_mb(self, megabytes: int) -> None:
        if megabytes < 1:
            raise ValueError("The memory limit cannot be less than one megabyte.")
        self._memory_limit_mb = megabytes

    @property
    def stop_after_handled_jobs(self) -> int:
        return self._stop_after_handled_jobs

    @stop_after_handled_jobs.setter
    def stop_after_handled_jobs(self, count: int) -> None:
        if count < 1:
            raise ValueError("The number of jobs to handle cannot be less than one.")
        self._stop_after_handled_jobs = count

    @property
    def jobs_handled(self) -> int:
        return self._jobs_handled

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def quit_requested(self) -> bool:
        return self._quit

    def pause(self) -> None:
        """Stop reserving new jobs until resume()."""
        logger.info("Worker paused")
        self._paused = True

    def resume(self) -> None:
        logger.info("Worker resumed")
        self._paused = False

    def stop(self) -> None:
        """Finish the current job, then return from processing()."""
        logger.info("Worker stopping")
        self._quit = True

    async def processing(self, job: Job | type[Job] | str) -> ExitCode:
        """
        Handle jobs from the queue of ``job`` until a stop condition is met.

        Args:
            job: Prototype job, a Job subclass or a registered job type. Its
                full queue name selects the queue.

        Returns:
            The exit code for the process.

        Raises:
            WorkerError: If the job cannot be resolved or the auto-push seed
                cannot be sent.
            MalformedJobError: If a reserved job cannot be rebuilt.
        """
        self._install_signal_handlers()
        try:
            return await self._process(self._resolve(job))
        finally:
            self._remove_signal_handlers()

    async def _process(self, prototype: Job) -> ExitCode:
        if prototype.auto_push.enabled:
            await self._bootstrap(prototype)

        if not self.events.fire(WORKER_BEFORE_HANDLING_QUEUE, prototype, cancelable=True):
            logger.info("Queue handling cancelled", extra={"queue": prototype.full_queue_name})
            return ExitCode.OK

        logger.info(
            "Worker started",
            extra={
                "queue": prototype.full_queue_name,
                "job_type": prototype.job_type,
                "stop_after_handled_jobs": self._stop_after_handled_jobs,
                "memory_limit_mb": self._memory_limit_mb,
            },
        )

        while True:
            await self._wait_while_paused()

            if not self._quit:
                job = await self._next_job(prototype)
                if job is None:
                    await asyncio.sleep(self.idle_sleep_seconds)
                else:
                    await self._handle_job(job)

            status = self._stop_condition()
            if status is not None:
                self._fire_stop(status)
                return status

    def _resolve(self, job: Job | type[Job] | str) -> Job:
        if isinstance(job, str):
            try:
                prototype = self.registry.create(job)
            except KeyError as e:
                raise WorkerError(f"Unknown job type: {job}") from e
        elif isinstance(job, type) and issubclass(job, Job):
            prototype = job()
            self.registry.ensure(prototype)
        elif isinstance(job, Job):
            prototype = job
            self.registry.ensure(prototype)
        else:
            raise WorkerError("The job must be a Job instance, a Job subclass or a job type.")

        prototype.connection = self.adapter
        if prototype.events is None:
            prototype.events = self.events
        return prototype

    async def _bootstrap(self, prototype: Job) -> None:
        """Seed an empty auto-push queue with one job."""
        if await prototype.get_total_jobs_in_queue() != 0:
            return

        if not await prototype.send():
            raise WorkerError(
                f"Failed to send the job {prototype.job_name} "
                f"in queue {prototype.full_queue_name} by auto-push."
            )

        logger.info(
            "Seeded auto-push queue",
            extra={"queue": prototype.full_queue_name, "job_id": prototype.job_id},
        )

    async def _wait_while_paused(self) -> None:
        while self._paused and not self._quit:
            await asyncio.sleep(self.pause_poll_seconds)

    async def _next_job(self, prototype: Job) -> Job | None:
        try:
            return await prototype.get_next_job()
        except TransportError as e:
            logger.warning(
                f"Failed to reserve job: {e}",
                extra={"queue": prototype.full_queue_name},
            )
            self.events.fire(WORKER_ERROR, self, {"error": e})
            return None

    async def _handle_job(self, job: Job) -> None:
        """
        Run the attempt cycle of one reserved job.

        A job whose beforeHandlingJob event is cancelled stays reserved until
        its TTR expires and does not count as handled.
        """
        if not self.events.fire(WORKER_BEFORE_HANDLING_JOB, job, cancelable=True):
            logger.info("Job handling cancelled", extra={"job_id": job.job_id})
            return

        bind_context(job_id=job.job_id, queue=job.full_queue_name)
        try:
            await self._deadline.run(job.ttr, lambda: self._attempt_cycle(job))
        finally:
            unbind_context("job_id", "queue")

        self._jobs_handled += 1
        self.events.fire(WORKER_AFTER_HANDLING_JOB, job)

    async def _attempt_cycle(self, job: Job) -> None:
        queue = job.full_queue_name

        while True:
            # Only from the second retry on
            if job.attempts > 1:
                self.events.fire(WORKER_AFTER_TRYING, job)

            self.events.fire(WORKER_START_JOB_HANDLING, job)

            start_time = time.perf_counter()
            success = await self._try_handle(job)
            duration = time.perf_counter() - start_time

            status = HandlingStatus.SUCCESS if success else HandlingStatus.FAILED
            self.events.fire(
                WORKER_END_JOB_HANDLING,
                job,
                {"time": duration, "status": status.value},
            )
            self._metrics.record_job_handled(
                queue=queue,
                status=status.value,
                duration_seconds=duration,
            )

            job.increment_attempt()

            if success:
                logger.info(
                    "Job handled successfully",
                    extra={"duration": f"{duration:.3f}s", "attempt": job.attempts},
                )
                if job.auto_push.enabled:
                    await self._settle(job, job.release, delay=job.auto_push_interval)
                    return
            else:
                logger.warning(
                    "Job handling failed",
                    extra={"attempt": job.attempts, "max_attempts": job.max_attempts_to_delete},
                )
                if not job.is_exceeded_attempts():
                    if self.events.fire(WORKER_BEFORE_TRYING, job, cancelable=True):
                        if job.attempt_delay > 0:
                            await asyncio.sleep(job.attempt_delay)
                        continue

            await self._settle(job, job.delete)
            return

    async def _try_handle(self, job: Job) -> bool:
        with create_span(
            SPAN_HANDLE_JOB,
            job_id=job.job_id,
            queue=job.full_queue_name,
            attempt=job.attempts + 1,
        ):
            try:
                return bool(await job.handle())
            except Exception as e:
                logger.exception(
                    "Exception handling job",
                    extra={"error": str(e), "attempt": job.attempts + 1},
                )
                return False

    async def _settle(self, job: Job, operation: Callable[..., Any], **kwargs: Any) -> None:
        """Delete or release a job; server failures do not stop the worker."""
        try:
            done = await operation(**kwargs)
        except (ProtocolError, TransportError) as e:
            logger.error(
                f"Failed to {operation.__name__} job: {e}",
                extra={"job_id": job.job_id},
            )
            self.events.fire(WORKER_ERROR, job, {"error": e})
            return

        if not done:
            logger.warning(
                f"Job {operation.__name__} refused",
                extra={
                    "job_id": job.job_id,
                    "messages": [str(message) for message in job.get_messages()],
                },
            )

    def _stop_condition(self) -> ExitCode | None:
        if self._quit:
            return ExitCode.OK

        if self._is_memory_exceeded():
            return ExitCode.MEMORY_LIMIT

        if self._jobs_handled >= self._stop_after_handled_jobs:
            return ExitCode.OK

        return None

    def _is_memory_exceeded(self) -> bool:
        rss_mb = self._proc.memory_info().rss / 1024 / 1024
        return rss_mb >= self._memory_limit_mb

    def _fire_stop(self, status: ExitCode) -> None:
        self.events.fire(WORKER_STOP, self, {"status": int(status)})
        logger.info(
            "Worker stopped",
            extra={"exit_code": int(status), "jobs_handled": self._jobs_handled},
        )

    def kill(self, status: int = ExitCode.DEADLINE_EXCEEDED) -> None:
        """End the process immediately, skipping cleanup."""
        self.events.fire(WORKER_STOP, self, {"status": int(status)})
        logger.critical("Worker killed", extra={"exit_code": int(status)})
        flush_logging()
        os._exit(int(status))

    def _install_signal_handlers(self) -> None:
        if not self.handle_signals:
            return

        loop = asyncio.get_running_loop()
        for name, action in _SIGNAL_ACTIONS:
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, getattr(self, action))
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug(f"Signal {name} not supported, skipping")
                continue
            self._installed_signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        if not self._installed_signals:
            return

        loop = asyncio.get_running_loop()
        for sig in self._installed_signals:
            loop.remove_signal_handler(sig)
        self._installed_signals.clear()


async def run_async(
    job: Job | type[Job] | str,
    adapter: Adapter | None = None,
    registry: JobRegistry | None = None,
    events: EventDispatcher | None = None,
    **worker_options: Any,
) -> ExitCode:
    """
    Run a worker with logging, tracing and metrics set up from settings.

    Returns:
        The exit code for the process.
    """
    settings = get_settings()

    setup_logging()
    if settings.tracing_enabled:
        setup_tracing()
    setup_metrics()
    if settings.prometheus_port:
        start_metrics_server(settings.prometheus_port)

    worker = Worker(adapter=adapter, registry=registry, events=events, **worker_options)

    try:
        return await worker.processing(job)
    except MalformedJobError as e:
        logger.error(f"Worker stopped on a malformed job: {e}", extra={"job_id": e.job_id})
        return ExitCode.MALFORMED_JOB
    finally:
        await worker.adapter.disconnect()


def run(job: Job | type[Job] | str, **kwargs: Any) -> NoReturn:
    """Run the worker and exit the process with its exit code."""
    code = asyncio.run(run_async(job, **kwargs))
    sys.exit(int(code))
