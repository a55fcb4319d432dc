"""
Shared pytest fixtures for BlogMailer queue tests.

Provides:
- An isolated EmailQueue per test (SQLite file under tmp_path)
- Sample payloads and templates
- Mock senders built on unittest.mock
- A no-op send throttle so batches run at full speed
"""

import pytest
from unittest.mock import Mock


# =============================================================================
# Queue Fixtures
# =============================================================================

@pytest.fixture
def data_dir(tmp_path):
    """Data directory path (string) for queue and scheduler files."""
    return str(tmp_path / "data")


@pytest.fixture
def queue(data_dir):
    """
    Fresh EmailQueue backed by a temporary database.

    Usage:
        def test_enqueue(queue, payload):
            result = queue.enqueue("a@example.com", payload, "newsletter")
    """
    from mail_queue.store import EmailQueue
    return EmailQueue(data_dir)


@pytest.fixture
def payload():
    """A rendered EmailPayload."""
    from mail_queue.models import EmailPayload
    return EmailPayload(
        subject="Weekly digest",
        body="<p>Hello reader</p>",
        headers={"Content-Type": "text/html; charset=UTF-8"},
    )


@pytest.fixture
def retry_policy():
    """Default 5/15/45 minute retry policy."""
    from worker.backoff import RetryPolicy
    return RetryPolicy()


@pytest.fixture
def fill_queue(queue, payload):
    """
    Factory that enqueues N recipients into a campaign.

    Usage:
        ids = fill_queue(10)
        ids = fill_queue(3, campaign_key="custom:7", now=1000.0)
    """
    def _fill(count, campaign_key="newsletter", now=None, **kwargs):
        ids = []
        for i in range(count):
            result = queue.enqueue(
                f"reader{i}@example.com", payload, campaign_key, now=now, **kwargs
            )
            ids.append(result.job_id)
        return ids
    return _fill


# =============================================================================
# Sender / Throttle Fixtures
# =============================================================================

@pytest.fixture
def mock_sender():
    """Sender mock whose send() succeeds by default."""
    sender = Mock()
    sender.send.return_value = True
    return sender


@pytest.fixture
def no_throttle():
    """SendThrottle that never sleeps."""
    from worker.rate_limiter import SendThrottle
    return SendThrottle(delay_seconds=0)


@pytest.fixture
def processor_factory(queue, mock_sender, retry_policy, no_throttle):
    """
    Factory for BatchProcessor wired to the test queue.

    Usage:
        processor = processor_factory(batch_size=10)
        processor = processor_factory(batch_size=5, sender=flaky_sender)
    """
    from worker.processor import BatchProcessor

    def _make(batch_size=50, sender=None, throttle=None):
        return BatchProcessor(
            queue=queue,
            sender=sender if sender is not None else mock_sender,
            batch_size=batch_size,
            retry_policy=retry_policy,
            throttle=throttle if throttle is not None else no_throttle,
        )
    return _make


# =============================================================================
# Campaign Fixtures
# =============================================================================

@pytest.fixture
def template():
    """Newsletter template using every built-in placeholder."""
    from campaign.templates import PayloadTemplate
    return PayloadTemplate(
        subject="{{site_name}} digest for {{subscriber_name}}",
        body=(
            "<p>Hi {{subscriber_name}} ({{subscriber_email}})</p>"
            "<a href=\"{{unsubscribe_url}}\">Unsubscribe</a>"
        ),
        headers={"List-Unsubscribe": "<{{unsubscribe_url}}>"},
        context={"site_name": "Example Blog"},
        unsubscribe_base_url="https://blog.example.com/",
    )
