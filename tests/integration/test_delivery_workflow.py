"""
End-to-end delivery scenarios: compose a campaign, process it in batches,
retry failures through backoff, and verify final queue state.
"""

from datetime import timedelta

import pytest
from freezegun import freeze_time

from campaign.composer import CampaignComposer
from campaign.templates import PayloadTemplate
from mail_queue.models import JobState


WEEKLY = PayloadTemplate(subject="Weekly for {{subscriber_name}}", body="Hi {{subscriber_email}}")


@pytest.mark.integration
class TestEndToEnd:
    """Full compose -> process -> retry -> settle workflow."""

    def test_ten_jobs_three_always_failing(self, queue, processor_factory, scripted_sender, weekly_recipients):
        """7 sent, 3 failed with attempts == 3 once backoff has played out."""
        failing = set(weekly_recipients[:3])
        sender = scripted_sender(failing=failing)
        processor = processor_factory(batch_size=10, sender=sender)

        with freeze_time("2026-01-01 12:00:00") as frozen:
            result = CampaignComposer(queue, max_attempts=3).compose("weekly", weekly_recipients, WEEKLY)
            assert result.queued == 10

            first = processor.process_once()
            assert (first.processed, first.sent, first.failed) == (10, 7, 3)

            # Not due yet: nothing claimed until the 5 minute backoff passes
            assert processor.process_once().processed == 0

            rounds = 0
            while queue.stats()["pending"] and rounds < 10:
                pending = queue.list_jobs(state=JobState.PENDING)
                next_due = min(job.not_before for job in pending)
                frozen.move_to(_utc(next_due))
                processor.process_once()
                rounds += 1

        stats = queue.stats()
        assert stats["sent"] == 7
        assert stats["failed"] == 3
        assert stats["pending"] == 0
        for job in queue.list_jobs(state=JobState.FAILED):
            assert job.recipient in failing
            assert job.attempts == job.max_attempts == 3
            assert job.last_error == "Sender reported failure"
            assert sender.attempts_for(job.recipient) == 3

    def test_retry_delays_follow_policy(self, queue, processor_factory, scripted_sender):
        """Failures push not_before out by 5 then 15 minutes."""
        sender = scripted_sender(failing={"a@example.com"})
        processor = processor_factory(sender=sender)

        with freeze_time("2026-01-01 12:00:00") as frozen:
            job_id = queue.enqueue("a@example.com", WEEKLY.render(_recipient("a@example.com")), "weekly").job_id
            processor.process_once()
            first_retry = queue.get(job_id)

            frozen.tick(timedelta(minutes=4, seconds=59))
            assert processor.process_once().processed == 0

            frozen.tick(timedelta(seconds=1))
            processor.process_once()
            second_retry = queue.get(job_id)

        assert first_retry.not_before - first_retry.last_attempted_at == 300
        assert second_retry.not_before - second_retry.last_attempted_at == 900
        assert second_retry.attempts == 2

    def test_drain_sends_whole_campaign_now(self, queue, processor_factory, mock_sender, template):
        recipients = [f"user{i}@example.com" for i in range(23)]
        composed = CampaignComposer(queue).compose("newsletter", recipients, template)

        drained = processor_factory(batch_size=10).drain(target=composed.queued)

        assert drained.sent == 23
        assert drained.iterations == 3
        assert queue.stats()["sent"] == 23
        assert mock_sender.send.call_count == 23


@pytest.mark.integration
class TestCampaignScenarios:
    """Duplicate skipping, batch throttling and explicit resend."""

    def test_duplicate_skip_before_processing(self, queue, template):
        recipients = [f"r{i}@example.com" for i in range(5)]
        composer = CampaignComposer(queue)

        composer.compose("X", recipients, template)
        second = composer.compose("X", recipients, template)

        assert (second.queued, second.skipped_duplicate) == (0, 5)
        assert queue.count_active("X") == 5

    def test_batch_size_throttling(self, queue, fill_queue, processor_factory):
        fill_queue(25)

        result = processor_factory(batch_size=10).process_once()

        assert result.processed == 10
        assert queue.stats()["pending"] == 15

    def test_resend_after_delivery_queues_again(self, queue, processor_factory, template):
        """A finished campaign can be sent again to the same list."""
        recipients = [f"r{i}@example.com" for i in range(3)]
        composer = CampaignComposer(queue)
        composer.compose("X", recipients, template)
        processor_factory().drain()

        again = composer.compose("X", recipients, template)

        assert again.queued == 3
        assert queue.stats()["sent"] == 3

    def test_manual_resend_cancels_previous_run(self, queue, processor_factory, template):
        recipients = [f"r{i}@example.com" for i in range(6)]
        composer = CampaignComposer(queue)
        composer.compose("X", recipients, template)
        processor_factory(batch_size=2).process_once()

        cancelled = composer.cancel_previous_run("X")
        again = composer.compose("X", recipients, template)

        assert cancelled == 4
        assert again.queued == 6
        assert queue.stats()["cancelled"] == 4


def _utc(timestamp):
    from datetime import datetime, timezone
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _recipient(email):
    from campaign.templates import Recipient
    return Recipient(email)
