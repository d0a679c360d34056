"""
Job type registry.

Maps job type identifiers to factories so a reserved job can be rebuilt from
the type name stored in its snapshot. The host application owns the registry
and hands it to the adapter and the worker.
"""

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, overload

if TYPE_CHECKING:
    from tubeworker.jobs.job import Job

logger = logging.getLogger(__name__)

# Type alias for job factories; Job subclasses qualify as-is
JobFactory = Callable[..., "Job"]


class JobRegistry:
    """
    Registry of job factories keyed by job type.

    Example:
        registry = JobRegistry()

        @registry.register
        class SendEmail(Job):
            ...

        @registry.register("reports.nightly")
        def make_report(**kwargs) -> Job:
            ...
    """

    def __init__(self) -> None:
        self._factories: dict[str, JobFactory] = {}

    @overload
    def register(self, job_type: JobFactory) -> JobFactory: ...

    @overload
    def register(
        self, job_type: str | None = None, factory: None = None
    ) -> Callable[[JobFactory], JobFactory]: ...

    @overload
    def register(self, job_type: str | None, factory: JobFactory) -> JobFactory: ...

    def register(self, job_type=None, factory=None):
        """
        Register a job factory.

        Usable as a bare decorator (the factory's ``__name__`` becomes the
        type), as a decorator with an explicit type, or as a direct call.

        Args:
            job_type: The job type, or the factory itself.
            factory: The factory when registering with a direct call.

        Returns:
            The factory, or a decorator registering it.
        """
        if callable(job_type) and factory is None:
            self._add(None, job_type)
            return job_type

        if factory is not None:
            self._add(job_type, factory)
            return factory

        def decorator(func: JobFactory) -> JobFactory:
            self._add(job_type, func)
            return func

        return decorator

    def _add(self, job_type: str | None, factory: JobFactory) -> None:
        key = job_type or factory.__name__
        self._factories[key] = factory
        logger.info(f"Registered job type: {key}")

    def get(self, job_type: str) -> JobFactory | None:
        """
        Get the factory for a job type.

        Returns:
            The factory or None if not registered.
        """
        return self._factories.get(job_type)

    def create(self, job_type: str, **kwargs: Any) -> "Job":
        """
        Build a new job of the given type.

        Args:
            job_type: Registered job type.
            **kwargs: Passed to the factory (e.g. ``connection``, ``events``).

        Returns:
            The new job, tagged with ``job_type``.

        Raises:
            KeyError: If the type is not registered.
        """
        factory = self._factories.get(job_type)
        if factory is None:
            raise KeyError(f"No job registered for type: {job_type}")

        job = factory(**kwargs)
        job.job_type = job_type
        return job

    def ensure(self, job: "Job") -> None:
        """Register the class of ``job`` under its type unless already known."""
        if job.job_type not in self._factories:
            self._add(job.job_type, type(job))

    def list_job_types(self) -> list[str]:
        """List all registered job types."""
        return list(self._factories.keys())

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._factories

    def __len__(self) -> int:
        return len(self._factories)
