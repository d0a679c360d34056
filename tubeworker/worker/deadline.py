"""
Per-job deadline watchdogs.

A job that outlives its time-to-run has already been handed back to the tube
by the server, so the only safe reaction is to end the process. Two flavours:

- SignalDeadline arms SIGALRM, which interrupts even code that blocks the
  event loop.
- TaskDeadline runs the work as a task under asyncio.wait_for, for platforms
  without SIGALRM or when not on the main thread.
"""

import asyncio
import logging
import signal
import threading
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tubeworker.errors import DeadlineExceeded

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Called on expiry; normally never returns
KillCallback = Callable[[], None]


class Deadline:
    """Runs work without a time limit. Base for the real watchdogs."""

    def __init__(self, on_expire: KillCallback):
        self._on_expire = on_expire

    async def run(self, seconds: float, work: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``work`` under a deadline.

        Args:
            seconds: Time limit. Zero or less means no limit.
            work: Coroutine function to run.

        Returns:
            The result of ``work``.
        """
        return await work()

    def _expire(self, seconds: float) -> None:
        logger.error("Job deadline exceeded", extra={"deadline_seconds": seconds})
        self._on_expire()


class SignalDeadline(Deadline):
    """Deadline enforced with SIGALRM and an interval timer."""

    def __init__(self, on_expire: KillCallback):
        super().__init__(on_expire)
        self._previous: Any = None
        self._armed = False

    def arm(self, seconds: float) -> None:
        if seconds <= 0:
            return

        def handler(signum: int, frame: Any) -> None:
            self._expire(seconds)

        self._previous = signal.signal(signal.SIGALRM, handler)
        signal.setitimer(signal.ITIMER_REAL, seconds)
        self._armed = True

    def disarm(self) -> None:
        if not self._armed:
            return

        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(signal.SIGALRM, self._previous or signal.SIG_DFL)
        self._previous = None
        self._armed = False

    async def run(self, seconds: float, work: Callable[[], Awaitable[T]]) -> T:
        self.arm(seconds)
        try:
            return await work()
        finally:
            self.disarm()


class TaskDeadline(Deadline):
    """Deadline enforced by cancelling the work task."""

    async def run(self, seconds: float, work: Callable[[], Awaitable[T]]) -> T:
        if seconds <= 0:
            return await work()

        task = asyncio.ensure_future(work())
        try:
            # wait_for cancels the task on timeout
            return await asyncio.wait_for(task, timeout=seconds)
        except TimeoutError:
            self._expire(seconds)
            raise DeadlineExceeded(seconds) from None


def supports_signal_deadline() -> bool:
    return (
        hasattr(signal, "SIGALRM")
        and hasattr(signal, "setitimer")
        and threading.current_thread() is threading.main_thread()
    )


def create_deadline(on_expire: KillCallback, enforce: bool = True) -> Deadline:
    """
    Pick the watchdog for this platform.

    Args:
        on_expire: Kill callback.
        enforce: False disables deadlines altogether.
    """
    if not enforce:
        return Deadline(on_expire)
    if supports_signal_deadline():
        return SignalDeadline(on_expire)
    return TaskDeadline(on_expire)
