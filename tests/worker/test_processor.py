"""
Tests for BatchProcessor.

Verifies batch claiming, per-job isolation of sender failures, retry
bookkeeping, storage error handling and the drain loop. The send throttle
is disabled unless a test is about throttling.
"""

import pytest
from unittest.mock import Mock

from mail_queue.exceptions import DeliveryFailure, StorageError
from mail_queue.models import JobState
from worker.stats import StopReason


# =============================================================================
# process_once() Tests
# =============================================================================


class TestProcessOnce:
    """Tests for BatchProcessor.process_once()."""

    def test_empty_queue_returns_zero_counts(self, processor_factory, mock_sender):
        result = processor_factory().process_once()

        assert (result.processed, result.sent, result.failed) == (0, 0, 0)
        assert result.message == "No emails in queue"
        mock_sender.send.assert_not_called()

    def test_all_sent(self, queue, fill_queue, processor_factory, mock_sender):
        fill_queue(3)

        result = processor_factory().process_once()

        assert (result.processed, result.sent, result.failed) == (3, 3, 0)
        assert queue.stats()["sent"] == 3
        assert mock_sender.send.call_count == 3

    def test_sender_receives_recipient_and_payload(self, fill_queue, processor_factory, mock_sender, payload):
        fill_queue(1)

        processor_factory().process_once()

        mock_sender.send.assert_called_once_with("reader0@example.com", payload)

    def test_batch_size_limits_claim(self, queue, fill_queue, processor_factory):
        fill_queue(7)

        result = processor_factory(batch_size=5).process_once()

        assert result.processed == 5
        assert queue.stats()["pending"] == 2

    def test_per_call_override(self, queue, fill_queue, processor_factory):
        fill_queue(7)

        result = processor_factory(batch_size=5).process_once(batch_size=2)
        assert result.processed == 2

    def test_falsy_result_recorded_as_failure(self, queue, fill_queue, processor_factory, mock_sender):
        job_id = fill_queue(1)[0]
        mock_sender.send.return_value = False

        result = processor_factory().process_once()

        job = queue.get(job_id)
        assert result.failed == 1
        assert job.state == JobState.PENDING
        assert job.attempts == 1
        assert job.last_error == "Sender reported failure"

    def test_exception_isolated_to_its_job(self, queue, fill_queue, processor_factory, mock_sender):
        """One raising send does not abort the rest of the batch."""
        ids = fill_queue(3)
        mock_sender.send.side_effect = [True, ConnectionError("SMTP down"), True]

        result = processor_factory().process_once()

        assert (result.processed, result.sent, result.failed) == (3, 2, 1)
        assert queue.get(ids[1]).last_error == "ConnectionError: SMTP down"
        assert queue.get(ids[0]).state == JobState.SENT
        assert queue.get(ids[2]).state == JobState.SENT

    def test_delivery_failure_message_recorded(self, queue, fill_queue, processor_factory, mock_sender):
        job_id = fill_queue(1)[0]
        mock_sender.send.side_effect = DeliveryFailure("Mailbox unavailable")

        processor_factory().process_once()

        assert queue.get(job_id).last_error == "Mailbox unavailable"

    def test_exhausted_jobs_reported(self, queue, payload, processor_factory, mock_sender):
        job_id = queue.enqueue("a@example.com", payload, "newsletter", max_attempts=1).job_id
        mock_sender.send.return_value = False

        result = processor_factory().process_once()

        assert result.exhausted == [job_id]
        assert queue.get(job_id).state == JobState.FAILED

    def test_claim_storage_error_returns_empty_result(self, mock_sender):
        """A locked database while claiming means 'no batch', never a raise."""
        from worker.processor import BatchProcessor

        broken_queue = Mock()
        broken_queue.claim_batch.side_effect = StorageError("database is locked")
        processor = BatchProcessor(broken_queue, mock_sender, batch_size=10)

        result = processor.process_once()

        assert result.storage_error is True
        assert result.processed == 0
        mock_sender.send.assert_not_called()

    def test_mark_storage_error_aborts_batch(self, queue, fill_queue, mock_sender):
        """Failure to record an outcome stops the batch; later jobs stay claimed."""
        from worker.processor import BatchProcessor
        from worker.rate_limiter import SendThrottle

        fill_queue(3)
        flaky_queue = Mock(wraps=queue)
        flaky_queue.mark_sent.side_effect = [True, StorageError("disk full"), True]
        processor = BatchProcessor(flaky_queue, mock_sender, batch_size=10,
                                   throttle=SendThrottle(delay_seconds=0))

        result = processor.process_once()

        assert result.storage_error is True
        assert result.processed == 2
        assert mock_sender.send.call_count == 2
        assert queue.stats()["claimed"] == 3

    def test_claim_released_while_sending_not_counted(self, queue, fill_queue, processor_factory, retry_policy):
        """A stale-claim sweep mid-batch: nothing counted as sent and later jobs are skipped."""
        import time

        fill_queue(2)

        def sweep_then_succeed(recipient, payload):
            queue.release_stale_claims(0, retry_policy, now=time.time() + 60)
            return True

        sender = Mock()
        sender.send.side_effect = sweep_then_succeed

        result = processor_factory(sender=sender).process_once()

        assert sender.send.call_count == 1
        assert (result.processed, result.sent, result.failed, result.lost) == (2, 0, 0, 2)
        assert queue.stats()["pending"] == 2
        assert all(job.attempts == 1 for job in queue.list_jobs())

    def test_recipient_delivered_with_original_case(self, queue, payload, processor_factory, mock_sender):
        queue.enqueue("John.Doe@Example.com", payload, "newsletter")
        assert queue.enqueue("john.doe@example.com", payload, "newsletter").is_duplicate

        processor_factory().process_once()

        mock_sender.send.assert_called_once_with("John.Doe@Example.com", payload)

    def test_throttle_waits_between_sends(self, fill_queue, processor_factory):
        throttle = Mock()
        fill_queue(4)

        processor_factory(throttle=throttle).process_once()

        throttle.reset.assert_called_once()
        assert throttle.wait.call_count == 4

    def test_invalid_batch_size(self, queue, mock_sender):
        from worker.processor import BatchProcessor

        with pytest.raises(ValueError):
            BatchProcessor(queue, mock_sender, batch_size=0)


class TestFromConfig:
    """Tests for BatchProcessor.from_config()."""

    def test_uses_tier_batch_size_and_throttle(self, queue, mock_sender):
        from validation.config import MailerConfig
        from worker.processor import BatchProcessor

        config = MailerConfig(tier="starter", send_delay_ms=250)
        processor = BatchProcessor.from_config(queue, mock_sender, config)

        assert processor.batch_size == 100
        assert processor.throttle.delay_seconds == 0.25
        assert processor.retry_policy.max_attempts == 3


# =============================================================================
# drain() Tests
# =============================================================================


class TestDrain:
    """Tests for BatchProcessor.drain()."""

    def test_drains_until_empty(self, queue, fill_queue, processor_factory):
        fill_queue(25)

        result = processor_factory(batch_size=10).drain()

        assert result.processed == 25
        assert result.iterations == 4  # 10 + 10 + 5 + empty
        assert result.stop_reason == StopReason.EMPTY
        assert queue.stats()["sent"] == 25

    def test_stops_at_target(self, queue, fill_queue, processor_factory):
        fill_queue(25)

        result = processor_factory(batch_size=10).drain(target=20)

        assert result.processed == 20
        assert result.iterations == 2
        assert result.stop_reason == StopReason.TARGET_REACHED
        assert queue.stats()["pending"] == 5

    def test_iteration_cap(self, queue, fill_queue, processor_factory):
        fill_queue(10)

        result = processor_factory(batch_size=2).drain(max_iterations=3)

        assert result.iterations == 3
        assert result.processed == 6
        assert result.stop_reason == StopReason.ITERATION_CAP

    def test_failed_jobs_wait_for_backoff(self, queue, fill_queue, processor_factory, mock_sender):
        """Retried jobs are not due yet, so the loop ends instead of spinning."""
        fill_queue(3)
        mock_sender.send.return_value = False

        result = processor_factory(batch_size=10).drain()

        assert result.failed == 3
        assert result.stop_reason == StopReason.EMPTY
        assert queue.stats()["pending"] == 3

    def test_storage_error_stops_drain(self, mock_sender):
        from worker.processor import BatchProcessor

        broken_queue = Mock()
        broken_queue.claim_batch.side_effect = StorageError("locked")

        result = BatchProcessor(broken_queue, mock_sender, batch_size=5).drain()

        assert result.stop_reason == StopReason.STORAGE_ERROR
        assert result.iterations == 1

    def test_to_dict(self, fill_queue, processor_factory):
        fill_queue(2)

        data = processor_factory().drain().to_dict()

        assert data["stop_reason"] == "empty"
        assert data["sent"] == 2
