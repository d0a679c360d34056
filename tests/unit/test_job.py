"""
Unit tests for the job lifecycle state machine.
"""

import pytest

from tubeworker.adapter.beanstalk import BeanstalkAdapter
from tubeworker.constants import JobState, Operation
from tubeworker.events import EventDispatcher
from tubeworker.jobs.job import Job
from tubeworker.jobs.registry import JobRegistry
from tubeworker.types.events import Event
from tubeworker.types.job import JobSnapshot, Message, SendOptions, merge_send_options


class EmailJob(Job):
    def initialize(self) -> None:
        self.queue_name = "emails"

    async def handle(self) -> bool:
        return True


class VetoJob(EmailJob):
    def before_send(self) -> bool:
        return False


class InvalidJob(EmailJob):
    def validation(self) -> list[Message]:
        return [Message("Recipient is required", field="payload", type="PresenceOf")]


class TestJobFields:
    """Tests for job fields and their validation."""

    def test_defaults(self):
        """Test field defaults of a new job."""
        job = EmailJob()

        assert job.state == JobState.NEW
        assert job.job_id is None
        assert job.job_type == "EmailJob"
        assert job.job_name == "EmailJob"
        assert job.full_queue_name == "emails"
        assert job.attempts == 0
        assert job.max_attempts_to_delete == 1
        assert job.auto_push_interval is None
        assert job.is_exists() is False

    def test_full_queue_name_with_prefix_and_auto_push(self):
        """Test the full queue name includes the prefix and the auto-push suffix."""
        job = EmailJob()
        job.queue_prefix = "app_"
        job.set_auto_push(True, 30)

        assert job.full_queue_name == "app_emailsEmailJob"
        assert job.auto_push_interval == 30

    @pytest.mark.parametrize(
        "field,value",
        [
            ("priority", -1),
            ("delay", -5),
            ("ttr", -1),
            ("max_attempts_to_delete", 0),
            ("attempt_delay", -0.5),
            ("attempt_delay", "soon"),
        ],
    )
    def test_invalid_values_rejected(self, field: str, value):
        """Test invalid field values are rejected."""
        job = EmailJob()

        with pytest.raises(ValueError):
            setattr(job, field, value)

    def test_job_id_assigned_once(self):
        """Test the first assigned job id sticks and marks the job as sent."""
        job = EmailJob()
        job.job_id = 5
        job.job_id = 6

        assert job.job_id == 5
        assert job.state == JobState.SENT
        assert job.is_exists() is True

    def test_exceeded_attempts(self):
        """Test attempts are exceeded once they reach the limit."""
        job = EmailJob()
        job.max_attempts_to_delete = 3

        job.increment_attempt()
        job.increment_attempt()
        assert job.is_exceeded_attempts() is False

        job.increment_attempt()
        assert job.is_exceeded_attempts() is True

    def test_messages_filtered_by_field(self):
        """Test messages can be filtered by field."""
        job = EmailJob()
        job.append_message(Message("missing", field="payload"))
        job.append_message(Message("other"))

        assert [str(m) for m in job.get_messages("payload")] == ["missing"]
        assert len(job.get_messages()) == 2
        assert job.validation_has_failed() is True

    def test_snapshot_roundtrip_preserves_payload(self):
        """Test a snapshot rebuilds a job with the same payload."""
        payload = {
            "to": ["a@example.com", "b@example.com"],
            "meta": {"retry": None, "weights": [0.5, 1.5], "name": "Zoë"},
        }
        job = EmailJob(payload=payload)
        job.priority = 10
        job.max_attempts_to_delete = 3
        job.attempt_delay = 0.25

        snapshot = JobSnapshot.decode(job.snapshot().encode())
        restored = EmailJob.from_snapshot(snapshot)

        assert restored.payload == payload
        assert restored.priority == 10
        assert restored.max_attempts_to_delete == 3
        assert restored.attempt_delay == 0.25
        assert restored.state == JobState.NEW

    def test_operations_require_connection(self):
        """Test the connection of an unbound job raises RuntimeError."""
        job = EmailJob()

        with pytest.raises(RuntimeError):
            _ = job.connection


class TestJobOperations:
    """Tests for send/delete/release/bury against the fake server."""

    @pytest.mark.asyncio
    async def test_send_assigns_id_once(self, adapter: BeanstalkAdapter, server):
        """Test send assigns the server id and refuses a second send."""
        job = EmailJob(connection=adapter, payload={"to": "a@example.com"})

        assert await job.send() is True
        job_id = job.job_id
        assert isinstance(job_id, int)
        assert job.state == JobState.SENT

        assert await job.send() is False
        assert job.job_id == job_id
        assert job.attempts == 0
        assert str(job.get_messages()[-1]) == (
            "You can not send an existing (existed) task to the queue."
        )
        assert len(server.jobs_in("emails")) == 1

    @pytest.mark.asyncio
    async def test_send_fires_events_in_order(
        self, adapter: BeanstalkAdapter, dispatcher: EventDispatcher
    ):
        """Test send fires its events in order."""
        fired: list[str] = []
        dispatcher.attach("job", lambda event: fired.append(event.type))

        job = EmailJob(connection=adapter, events=dispatcher)
        await job.send()

        assert fired == [
            "job:beforeSend",
            "job:beforeValidationOnSend",
            "job:validation",
            "job:afterValidationOnSend",
            "job:afterSend",
        ]

    @pytest.mark.asyncio
    async def test_send_cancelled_by_hook(
        self, adapter: BeanstalkAdapter, dispatcher: EventDispatcher, server
    ):
        """Test a before_send hook returning False cancels the send."""
        fired: list[str] = []
        dispatcher.attach("job:notSent", lambda event: fired.append(event.name))

        job = VetoJob(connection=adapter, events=dispatcher)

        assert await job.send() is False
        assert job.operation_made == Operation.SEND
        assert fired == ["notSent"]
        assert server.jobs_in("emails") == []

    @pytest.mark.asyncio
    async def test_send_cancelled_by_listener(
        self, adapter: BeanstalkAdapter, dispatcher: EventDispatcher
    ):
        """Test a listener returning False cancels the send."""
        def veto(event: Event) -> bool:
            assert event.cancelable is True
            return False

        dispatcher.attach("job:afterValidationOnSend", veto)
        job = EmailJob(connection=adapter, events=dispatcher)

        assert await job.send() is False
        assert job.job_id is None

    @pytest.mark.asyncio
    async def test_send_rejected_by_validation(
        self, adapter: BeanstalkAdapter, dispatcher: EventDispatcher, server
    ):
        """Test validation messages reject the send."""
        fired: list[str] = []
        dispatcher.attach("job", lambda event: fired.append(event.name))

        job = InvalidJob(connection=adapter, events=dispatcher)

        assert await job.send() is False
        assert [m.type for m in job.get_messages("payload")] == ["PresenceOf"]
        assert "onValidationFails" in fired
        assert fired[-1] == "notSent"
        assert server.jobs_in("emails") == []

    @pytest.mark.asyncio
    async def test_send_options_override_job_values(self, adapter: BeanstalkAdapter, server):
        """Test per-send options override the job values."""
        job = EmailJob(connection=adapter)

        await job.send({"priority": 5, "delay": 10, "ttr": "bogus"})

        stored = server.jobs[job.job_id]
        assert stored.priority == 5
        assert stored.ttr == job.ttr
        assert stored.state == "delayed"

    @pytest.mark.asyncio
    async def test_delete_succeeds_when_server_lost_job(self, adapter: BeanstalkAdapter, server):
        """Test delete succeeds when the server no longer has the job."""
        job = EmailJob(connection=adapter)
        await job.send()
        server.jobs.clear()

        assert await job.delete() is True
        assert job.is_deleted() is True

    @pytest.mark.asyncio
    async def test_delete_twice(self, adapter: BeanstalkAdapter):
        """Test a deleted job cannot be deleted again."""
        job = EmailJob(connection=adapter)
        await job.send()
        await job.delete()

        assert await job.delete() is False
        assert str(job.get_messages()[-1]) == "The job has already been deleted."

    @pytest.mark.asyncio
    async def test_release_requires_reservation(self, adapter: BeanstalkAdapter):
        """Test release is refused for a job that is not reserved."""
        job = EmailJob(connection=adapter)
        await job.send()

        assert await job.release() is False
        assert job.state == JobState.SENT
        assert str(job.get_messages()[-1]) == "The job has not been reserved."

    @pytest.mark.asyncio
    async def test_release_delay_is_honoured(
        self,
        adapter: BeanstalkAdapter,
        registry: JobRegistry,
        dispatcher: EventDispatcher,
        server,
    ):
        """Test a released job becomes ready after its delay."""
        registry.register(EmailJob)
        producer = EmailJob(connection=adapter, events=dispatcher, payload={"n": 1})
        await producer.send()

        reserved = await producer.get_next_job()
        assert reserved is not None
        assert reserved.state == JobState.RESERVED
        assert reserved.events is dispatcher
        assert reserved.payload == {"n": 1}

        assert await reserved.release(delay=10) is True
        assert reserved.is_released() is True
        assert await reserved.delete() is False
        assert str(reserved.get_messages()[-1]) == "The job has already been released."

        assert await producer.get_next_job() is None

        server.advance(10)
        again = await producer.get_next_job()
        assert again is not None
        assert again.job_id == producer.job_id

    @pytest.mark.asyncio
    async def test_bury_reserved_job(
        self, adapter: BeanstalkAdapter, registry: JobRegistry, server
    ):
        """Test burying a reserved job."""
        registry.register(EmailJob)
        producer = EmailJob(connection=adapter)
        await producer.send()
        reserved = await producer.get_next_job()

        assert await reserved.bury() is True
        assert reserved.is_buried() is True
        assert server.jobs[reserved.job_id].state == "buried"
        assert await reserved.release() is False

    @pytest.mark.asyncio
    async def test_total_jobs_of_unknown_queue(self, adapter: BeanstalkAdapter):
        """Test an unknown queue has no jobs."""
        job = EmailJob(connection=adapter)
        job.queue_name = "never-used"

        assert await job.get_total_jobs_in_queue() == 0


class TestSendOptions:
    """Tests for merging per-send overrides."""

    def test_overrides_replace_fallbacks(self):
        """Test valid overrides win over the fallback values."""
        merged = merge_send_options(SendOptions(priority=1, ttr=30), 100, 0, 60)

        assert merged == (1, 0, 30)

    def test_invalid_overrides_ignored(self):
        """Test negative, boolean and non-integer overrides keep the fallback."""
        merged = merge_send_options({"priority": -1, "delay": True, "ttr": "9"}, 100, 5, 60)

        assert merged == (100, 5, 60)

    def test_missing_options(self):
        """Test no options returns the fallback values unchanged."""
        assert merge_send_options(None, 7, 8, 9) == (7, 8, 9)
