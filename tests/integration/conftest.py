"""
Integration test fixtures for the BlogMailer queue.

These fixtures compose the unit test fixtures from tests/conftest.py into
complete delivery scenarios:
- Campaign composed, then processed in batches
- Flaky recipients retried through backoff until failed
- Several workers claiming from one database

All integration tests should be marked with @pytest.mark.integration
"""

import pytest


class ScriptedSender:
    """Sender that fails a fixed set of recipients and records every attempt."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.attempts = []

    def send(self, recipient, payload):
        self.attempts.append(recipient)
        return recipient not in self.failing

    def attempts_for(self, recipient):
        return self.attempts.count(recipient)


@pytest.fixture
def scripted_sender():
    """
    Factory for ScriptedSender.

    Usage:
        sender = scripted_sender(failing={"reader0@example.com"})
    """
    def _make(failing=()):
        return ScriptedSender(failing)
    return _make


@pytest.fixture
def weekly_recipients():
    """Ten subscribers of the weekly campaign."""
    return [f"reader{i}@example.com" for i in range(1, 11)]
