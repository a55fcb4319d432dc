"""
Batch and drain counters reported by the batch processor.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum


@dataclass
class BatchResult:
    """Outcome of one process_once() call."""
    processed: int = 0
    sent: int = 0
    failed: int = 0
    # Jobs whose claim was released by a stale-claim sweep before the outcome was recorded
    lost: int = 0
    storage_error: bool = False
    # Job ids whose failure exhausted their attempts in this batch
    exhausted: list = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def message(self) -> str:
        if self.processed == 0:
            return "No emails in queue"
        message = f"Processed {self.processed} emails. Sent: {self.sent}, Failed: {self.failed}"
        if self.lost:
            message += f", Lost claims: {self.lost}"
        return message

    def to_dict(self) -> dict:
        return asdict(self)


class StopReason(Enum):
    """Why a drain loop stopped."""
    EMPTY = "empty"
    TARGET_REACHED = "target_reached"
    ITERATION_CAP = "iteration_cap"
    STORAGE_ERROR = "storage_error"


@dataclass
class DrainResult:
    """Aggregate outcome of repeated process_once() calls."""
    iterations: int = 0
    processed: int = 0
    sent: int = 0
    failed: int = 0
    lost: int = 0
    stop_reason: StopReason = StopReason.EMPTY

    def add(self, batch: BatchResult) -> None:
        self.iterations += 1
        self.processed += batch.processed
        self.sent += batch.sent
        self.failed += batch.failed
        self.lost += batch.lost

    def to_dict(self) -> dict:
        data = asdict(self)
        data['stop_reason'] = self.stop_reason.value
        return data
