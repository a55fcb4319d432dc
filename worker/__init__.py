"""
Delivery worker for queued emails.

Exports BatchProcessor, which claims and delivers one batch per call,
along with its retry policy and result types.
"""

from worker.processor import BatchProcessor
from worker.backoff import RetryPolicy
from worker.stats import BatchResult, DrainResult, StopReason

__all__ = ['BatchProcessor', 'RetryPolicy', 'BatchResult', 'DrainResult', 'StopReason']
