"""
Batch processor for queued emails.

Drives delivery of one bounded batch per invocation:
- Claims up to batch_size pending, due jobs
- Sends each through the injected Sender, sequentially, in claim order
- Marks successes sent; records failures for backoff retry or permanent failure
- Never blocks waiting for new work and never raises

Repeated invocation (cron ticks, or drain() for an immediate "send now")
is how a large campaign gets through the queue.
"""

import time
from typing import Optional, TYPE_CHECKING

from mail_queue.exceptions import StorageError, describe_failure
from mail_queue.models import JobRecord, JobState
from worker.backoff import RetryPolicy
from worker.rate_limiter import SendThrottle
from worker.stats import BatchResult, DrainResult, StopReason

from shared.log import create_logger
log_trace, log_debug, log_info, log_warn, log_error = create_logger("Worker")

if TYPE_CHECKING:
    from mail_queue.store import EmailQueue
    from validation.config import MailerConfig
    from worker.sender import Sender


# Batch cap for drain()
DEFAULT_MAX_DRAIN_ITERATIONS = 20


class BatchProcessor:
    """
    Processes one claimed batch of emails per call.

    Per-job failures are isolated: a sender returning False or raising only
    affects that job, which goes through mark_failed() and the retry policy.
    """

    def __init__(
        self,
        queue: 'EmailQueue',
        sender: 'Sender',
        batch_size: int,
        retry_policy: Optional[RetryPolicy] = None,
        throttle: Optional[SendThrottle] = None,
    ):
        """
        Initialize batch processor.

        Args:
            queue: EmailQueue to claim from and report to
            sender: Delivers one email, returns success
            batch_size: Default emails per batch (resolved by the caller from tier/config)
            retry_policy: Backoff for failed attempts (default: 5/15/45 minutes)
            throttle: Inter-send throttle (default: 100ms between sends)
        """
        if batch_size < 1:
            raise ValueError("batch_size must be a positive integer")
        self.queue = queue
        self.sender = sender
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.throttle = throttle if throttle is not None else SendThrottle()
        log_trace(
            f"Processor ready: batch size {batch_size}, "
            f"retry delays {self.retry_policy.schedule()} min"
        )

    @classmethod
    def from_config(
        cls,
        queue: 'EmailQueue',
        sender: 'Sender',
        config: 'MailerConfig',
    ) -> 'BatchProcessor':
        """Build a processor with batch size, backoff and throttle taken from config."""
        return cls(
            queue=queue,
            sender=sender,
            batch_size=config.effective_batch_size,
            retry_policy=RetryPolicy.from_config(config),
            throttle=SendThrottle(delay_seconds=config.send_delay_seconds),
        )

    def process_once(self, batch_size: Optional[int] = None) -> BatchResult:
        """
        Claim and deliver one batch.

        Args:
            batch_size: Override for this invocation (default: self.batch_size)

        Returns:
            BatchResult with processed/sent/failed counts. A storage failure
            while claiming yields an empty result flagged storage_error.
        """
        limit = batch_size if batch_size is not None else self.batch_size
        result = BatchResult()
        _start = time.perf_counter()

        try:
            jobs = self.queue.claim_batch(limit)
        except StorageError as e:
            log_error(f"Could not claim batch, will retry next cycle: {e}")
            result.storage_error = True
            return result

        if not jobs:
            log_debug("No pending emails in queue")
            return result

        log_info(f"Processing batch of {len(jobs)} email(s) (limit {limit})")
        self.throttle.reset()

        for job in jobs:
            self.throttle.wait()
            try:
                claimed = self.queue.begin_attempt(job)
            except StorageError as e:
                log_error(f"Job {job.id}: could not refresh claim, aborting batch: {e}")
                result.storage_error = True
                break
            if not claimed:
                # Claim was released by a stale-claim sweep; another run owns the job now
                log_warn(f"Job {job.id}: claim lost before sending, skipped")
                result.lost += 1
                result.processed += 1
                continue

            delivered, error = self._deliver(job)

            try:
                if delivered:
                    recorded = self.queue.mark_sent(job.id, claim_token=job.claim_token)
                    if recorded:
                        result.sent += 1
                        log_trace(f"Job {job.id}: sent to {job.recipient}")
                else:
                    new_state = self.queue.mark_failed(
                        job.id, describe_failure(error), self.retry_policy,
                        claim_token=job.claim_token,
                    )
                    recorded = new_state is not None
                    if recorded:
                        result.failed += 1
                    if new_state == JobState.FAILED:
                        result.exhausted.append(job.id)
            except StorageError as e:
                # Remaining claimed jobs are picked up by release_stale_claims()
                log_error(f"Job {job.id}: could not record outcome, aborting batch: {e}")
                result.processed += 1
                result.storage_error = True
                break

            if not recorded:
                log_warn(f"Job {job.id}: claim released while sending, outcome not recorded")
                result.lost += 1
            result.processed += 1

        result.elapsed = time.perf_counter() - _start
        log_info(f"Batch complete in {result.elapsed:.1f}s: {result.message}")
        if result.exhausted:
            log_warn(f"{len(result.exhausted)} email(s) exhausted their attempts: {result.exhausted}")
        return result

    def _deliver(self, job: JobRecord) -> tuple[bool, Optional[Exception]]:
        """
        Hand one job to the sender.

        Returns:
            (delivered, error) where error is the exception raised by the
            sender, or None when it returned a result
        """
        try:
            delivered = bool(self.sender.send(job.recipient, job.payload))
        except Exception as e:
            log_warn(f"Job {job.id}: exception sending to {job.recipient}: {e}")
            return False, e

        if not delivered:
            log_debug(f"Job {job.id}: sender reported failure for {job.recipient}")
        return delivered, None

    def drain(
        self,
        max_iterations: int = DEFAULT_MAX_DRAIN_ITERATIONS,
        target: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> DrainResult:
        """
        Run process_once() repeatedly for an immediate "send now".

        Stops when a batch processes nothing, when ``target`` emails have
        been processed, on a storage failure, or after ``max_iterations``
        batches.

        Args:
            max_iterations: Hard cap on batches
            target: Expected number of emails (e.g. how many were just queued)
            batch_size: Per-batch override

        Returns:
            DrainResult with totals and the stop reason
        """
        drain = DrainResult()

        while True:
            batch = self.process_once(batch_size=batch_size)
            drain.add(batch)

            if batch.storage_error:
                drain.stop_reason = StopReason.STORAGE_ERROR
                break
            if batch.processed == 0:
                drain.stop_reason = StopReason.EMPTY
                break
            if target is not None and drain.processed >= target:
                drain.stop_reason = StopReason.TARGET_REACHED
                break
            if drain.iterations >= max_iterations:
                drain.stop_reason = StopReason.ITERATION_CAP
                log_warn(f"Drain stopped after {drain.iterations} batches (cap reached)")
                break

        log_info(
            f"Drain finished ({drain.stop_reason.value}): {drain.iterations} batch(es), "
            f"sent {drain.sent}, failed {drain.failed}"
        )
        return drain
