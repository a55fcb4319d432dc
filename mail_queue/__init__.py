"""
Persistent Email Queue Module

Provides durable job storage for BlogMailer using SQLite. Queued emails
survive process restarts and crashes; claiming is atomic across processes.
"""

from mail_queue.models import EmailPayload, JobRecord, JobState
from mail_queue.exceptions import (
    DeliveryFailure,
    EnqueueOutcome,
    EnqueueResult,
    QueueError,
    StorageError,
)
from mail_queue.store import EmailQueue

__all__ = [
    'EmailQueue',
    'EmailPayload',
    'JobRecord',
    'JobState',
    'EnqueueOutcome',
    'EnqueueResult',
    'QueueError',
    'StorageError',
    'DeliveryFailure',
]
