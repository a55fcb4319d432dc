"""
Sender interface consumed by the batch processor.

Delivery itself (SMTP, an HTTP mail API, a CMS mail function) lives outside
the queue. Anything with a matching ``send`` method can be plugged in.
"""

from typing import Protocol, runtime_checkable

from mail_queue.models import EmailPayload
from shared.log import create_logger

_, _, log_info, _, _ = create_logger("Sender")


@runtime_checkable
class Sender(Protocol):
    """Deliver one email synchronously."""

    def send(self, recipient: str, payload: EmailPayload) -> bool:
        """
        Deliver ``payload`` to ``recipient``.

        Returns:
            True on success, False on failure. May also raise; the batch
            processor treats any exception as a failed attempt.
        """
        ...


class LoggingSender:
    """
    Sender that only logs each email and reports success.

    Used by the command-line runner when no real transport is wired in
    (dry runs, local testing of campaign composition).
    """

    def __init__(self):
        self.sent_count = 0

    def send(self, recipient: str, payload: EmailPayload) -> bool:
        self.sent_count += 1
        log_info(f"[dry-run] Would send '{payload.subject}' to {recipient}")
        return True
