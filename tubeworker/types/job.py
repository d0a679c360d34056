"""
Job-related type definitions.

JobSnapshot is the only shape that travels over the wire: it carries the pure
data of a job and never its connection or event listeners.
"""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from tubeworker.constants import (
    DEFAULT_DELAY,
    DEFAULT_MAX_ATTEMPTS_TO_DELETE,
    DEFAULT_PRIORITY,
    DEFAULT_TTR,
    DEFAULT_TUBE,
)


class AutoPush(BaseModel):
    """
    Auto-push settings.
    When enabled, a successfully handled job is released with
    ``interval_seconds`` delay instead of being deleted.
    """

    enabled: bool = False
    interval_seconds: int = Field(default=0, ge=0)


class JobSnapshot(BaseModel):
    """
    Wire representation of a job.
    Serialized as JSON into the body of a ``put`` command.
    """

    job_type: str
    job_name: str
    queue_name: str = DEFAULT_TUBE
    queue_prefix: str = ""
    priority: int = Field(default=DEFAULT_PRIORITY, ge=0)
    delay: int = Field(default=DEFAULT_DELAY, ge=0)
    ttr: int = Field(default=DEFAULT_TTR, ge=0)
    attempts: int = Field(default=0, ge=0)
    max_attempts_to_delete: int = Field(default=DEFAULT_MAX_ATTEMPTS_TO_DELETE, ge=1)
    attempt_delay: float = Field(default=0, ge=0)
    auto_push: AutoPush = Field(default_factory=AutoPush)
    payload: Any = None

    def encode(self) -> bytes:
        """Serialize to the bytes sent as a job body."""
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def decode(cls, body: bytes) -> "JobSnapshot":
        """
        Parse a job body.

        Raises:
            pydantic.ValidationError: If the body is not a job snapshot.
        """
        return cls.model_validate_json(body)


class SendOptions(BaseModel):
    """
    Per-send overrides for scheduling parameters.
    Unset values fall back to the job's or adapter's defaults.
    """

    priority: int | None = Field(default=None, ge=0)
    delay: int | None = Field(default=None, ge=0)
    ttr: int | None = Field(default=None, ge=0)


def merge_send_options(
    options: SendOptions | dict[str, Any] | None,
    priority: int,
    delay: int,
    ttr: int,
) -> tuple[int, int, int]:
    """
    Merge per-send overrides with fallback values.

    Missing, negative or non-integer overrides keep the fallback.

    Returns:
        Tuple of (priority, delay, ttr).
    """
    if options is None:
        values: dict[str, Any] = {}
    elif isinstance(options, SendOptions):
        values = options.model_dump()
    else:
        values = dict(options)

    def pick(name: str, default: int) -> int:
        value = values.get(name)
        if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
            return value
        return default

    return pick("priority", priority), pick("delay", delay), pick("ttr", ttr)


@dataclass
class ReservedJob:
    """A job claimed by ``reserve``: server id plus decoded snapshot."""

    job_id: int
    snapshot: JobSnapshot


@dataclass
class Message:
    """
    Diagnostic message attached to a job.
    Produced by validation or by a rejected lifecycle operation.
    """

    message: str
    field: str | None = None
    type: str | None = None
    code: int | None = None

    def __str__(self) -> str:
        return self.message
