"""
Error kinds for the email queue.

Expected outcomes (a duplicate enqueue) are reported through EnqueueResult
so callers can count them. Real failures are exceptions:

- StorageError: the SQLite store is unavailable or rejected a statement
- DeliveryFailure: raised by senders that want a descriptive failure reason
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from mail_queue.models import MAX_ERROR_LENGTH


class QueueError(Exception):
    """Base class for email queue errors."""
    pass


class StorageError(QueueError):
    """Persistence layer failure (locked, corrupt or unreachable database)."""
    pass


class DeliveryFailure(Exception):
    """A sender could not deliver one email."""

    def __init__(self, message: str, recipient: Optional[str] = None):
        super().__init__(message)
        self.recipient = recipient


class EnqueueOutcome(Enum):
    QUEUED = "queued"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class EnqueueResult:
    """Tagged result of EmailQueue.enqueue()."""
    outcome: EnqueueOutcome
    job_id: Optional[int] = None

    @property
    def queued(self) -> bool:
        return self.outcome == EnqueueOutcome.QUEUED

    @property
    def is_duplicate(self) -> bool:
        return self.outcome == EnqueueOutcome.DUPLICATE


def describe_failure(error: Optional[BaseException] = None) -> str:
    """
    Build the last_error text recorded for a failed delivery attempt.

    Args:
        error: Exception raised by the sender, or None when the sender
               returned a falsy result

    Returns:
        Message truncated to MAX_ERROR_LENGTH characters
    """
    if error is None:
        return "Sender reported failure"
    if isinstance(error, DeliveryFailure):
        message = str(error) or "Delivery failed"
    else:
        detail = str(error)
        message = f"{type(error).__name__}: {detail}" if detail else type(error).__name__
    return message[:MAX_ERROR_LENGTH]
