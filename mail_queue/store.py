"""
SQLite-backed persistent email queue.

Durable storage and atomic claiming of queued emails. Safe for several
processes (overlapping cron ticks, a manual "send now" racing a scheduled
run) because every state change is a conditional UPDATE checked against the
row's current state, and every operation runs on its own short-lived
connection.
"""

import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, List, Optional, TYPE_CHECKING

from mail_queue.exceptions import EnqueueOutcome, EnqueueResult, StorageError
from mail_queue.models import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    MAX_ERROR_LENGTH,
    TERMINAL_STATES,
    EmailPayload,
    JobRecord,
    JobState,
    states_leading_to,
)
from shared.log import create_logger
from validation.sanitizers import normalize_recipient, recipient_key

if TYPE_CHECKING:
    from worker.backoff import RetryPolicy

log_trace, log_debug, log_info, log_warn, log_error = create_logger("Queue")

DB_FILENAME = 'email_queue.db'

SCHEMA = """
CREATE TABLE IF NOT EXISTS email_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recipient TEXT NOT NULL,
    recipient_key TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    headers TEXT NOT NULL DEFAULT '{}',
    campaign_key TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 5,
    state TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    not_before REAL NOT NULL,
    created_at REAL NOT NULL,
    last_attempted_at REAL,
    sent_at REAL,
    updated_at REAL NOT NULL,
    last_error TEXT,
    claim_token TEXT,
    CHECK (attempts <= max_attempts)
);

CREATE INDEX IF NOT EXISTS idx_queue_claim
    ON email_queue(state, not_before, priority);
CREATE INDEX IF NOT EXISTS idx_queue_campaign
    ON email_queue(campaign_key, state);
CREATE INDEX IF NOT EXISTS idx_queue_updated_at
    ON email_queue(state, updated_at);
CREATE INDEX IF NOT EXISTS idx_queue_claim_token
    ON email_queue(claim_token);

-- One active (pending/claimed) job per recipient per campaign, case-insensitively
CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_active_recipient
    ON email_queue(campaign_key, recipient_key)
    WHERE state IN ('pending', 'claimed');
"""

CLAIM_ORDER = "priority DESC, created_at ASC, id ASC"


def _state_guard(target: JobState) -> tuple[str, list]:
    """
    SQL condition admitting only rows whose state may move to ``target``.

    Derived from ALLOWED_TRANSITIONS so every guarded UPDATE follows the
    state machine in mail_queue.models.
    """
    sources = sorted(state.value for state in states_leading_to(target))
    return f"state IN ({','.join('?' * len(sources))})", sources


class EmailQueue:
    """
    Persistent queue of JobRecords stored in <data_dir>/email_queue.db.

    All timestamps are unix seconds. Methods that depend on the current time
    accept an optional ``now`` so callers and tests can pin the clock.

    Usage:
        queue = EmailQueue('/var/lib/blogmailer')
        result = queue.enqueue('a@example.com', payload, campaign_key='newsletter')
        for job in queue.claim_batch(limit=50):
            ...
            queue.mark_sent(job.id)
    """

    def __init__(self, data_dir: str, busy_timeout: float = 30.0):
        """
        Open (and create if needed) the queue database.

        Args:
            data_dir: Directory holding email_queue.db
            busy_timeout: Seconds a connection waits on a locked database

        Raises:
            StorageError: If the database cannot be created
        """
        self.data_dir = data_dir
        self.db_path = os.path.join(data_dir, DB_FILENAME)
        self.busy_timeout = busy_timeout
        try:
            os.makedirs(data_dir, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create queue directory {data_dir}: {e}") from e
        self._init_schema()

    def _init_schema(self) -> None:
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        log_trace(f"Queue database ready at {self.db_path}")

    @contextmanager
    def _get_connection(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection that commits on success and always closes.

        Args:
            immediate: Take the write lock up front (BEGIN IMMEDIATE) for
                       read-check-write sequences

        Raises:
            StorageError: Wrapping any sqlite3.Error
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open queue database: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Queue database error: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    # =========================================================================
    # Enqueue
    # =========================================================================

    def enqueue(
        self,
        recipient: str,
        payload: EmailPayload,
        campaign_key: str,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        not_before: Optional[float] = None,
        now: Optional[float] = None,
    ) -> EnqueueResult:
        """
        Insert a new pending job.

        Args:
            recipient: Destination address, stored and delivered as given apart
                       from trimmed whitespace
            payload: Rendered email, frozen from this point on
            campaign_key: Logical send this job belongs to (e.g. "newsletter")
            priority: Higher values are claimed first
            max_attempts: Delivery attempts before the job is failed for good
            not_before: Earliest claim time (default: now)
            now: Current time (default: time.time())

        Returns:
            EnqueueResult tagged QUEUED (with job_id) or DUPLICATE when an
            active job already exists for the campaign and a case-insensitive
            match of the recipient

        Raises:
            ValueError: Empty recipient/campaign_key or max_attempts < 1
            StorageError: Database failure
        """
        recipient = normalize_recipient(recipient)
        if not recipient:
            raise ValueError("recipient cannot be empty")
        if not campaign_key or not campaign_key.strip():
            raise ValueError("campaign_key cannot be empty")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        if now is None:
            now = time.time()
        if not_before is None:
            not_before = now
        key = recipient_key(recipient)

        with self._get_connection(immediate=True) as conn:
            existing = conn.execute(
                """SELECT id FROM email_queue
                   WHERE campaign_key = ? AND recipient_key = ? AND state IN (?, ?)""",
                (campaign_key, key, JobState.PENDING.value, JobState.CLAIMED.value),
            ).fetchone()
            if existing is not None:
                log_trace(f"Skipped {recipient}: job {existing['id']} already active in {campaign_key}")
                return EnqueueResult(EnqueueOutcome.DUPLICATE, existing['id'])

            cursor = conn.execute(
                """INSERT INTO email_queue
                   (recipient, recipient_key, subject, body, headers, campaign_key, priority,
                    state, attempts, max_attempts, not_before, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)""",
                (
                    recipient,
                    key,
                    payload.subject,
                    payload.body,
                    payload.headers_json(),
                    campaign_key,
                    int(priority),
                    JobState.PENDING.value,
                    int(max_attempts),
                    not_before,
                    now,
                    now,
                ),
            )
            job_id = cursor.lastrowid

        log_trace(f"Queued job {job_id} for {recipient} ({campaign_key})")
        return EnqueueResult(EnqueueOutcome.QUEUED, job_id)

    # =========================================================================
    # Claim / complete / fail
    # =========================================================================

    def claim_batch(self, limit: int, now: Optional[float] = None) -> List[JobRecord]:
        """
        Atomically claim up to ``limit`` pending jobs that are due.

        A single conditional UPDATE marks the selected rows claimed under a
        fresh claim token, so concurrent claimers never receive the same job.

        Args:
            limit: Maximum number of jobs to claim
            now: Current time (default: time.time())

        Returns:
            Claimed jobs ordered priority DESC, created_at ASC
        """
        if limit <= 0:
            return []
        if now is None:
            now = time.time()

        guard, sources = _state_guard(JobState.CLAIMED)
        token = uuid.uuid4().hex
        with self._get_connection(immediate=True) as conn:
            conn.execute(
                f"""UPDATE email_queue
                    SET state = ?, claim_token = ?, last_attempted_at = ?, updated_at = ?
                    WHERE {guard}
                      AND id IN (
                          SELECT id FROM email_queue
                          WHERE state = ? AND not_before <= ?
                          ORDER BY {CLAIM_ORDER}
                          LIMIT ?
                      )""",
                (
                    JobState.CLAIMED.value, token, now, now,
                    *sources,
                    JobState.PENDING.value, now,
                    int(limit),
                ),
            )
            rows = conn.execute(
                f"SELECT * FROM email_queue WHERE claim_token = ? ORDER BY {CLAIM_ORDER}",
                (token,),
            ).fetchall()

        jobs = [JobRecord.from_row(row) for row in rows]
        if jobs:
            log_debug(f"Claimed {len(jobs)} job(s) (limit {limit})")
        return jobs

    def begin_attempt(self, job: JobRecord, now: Optional[float] = None) -> bool:
        """
        Refresh a batch's claim just before one of its jobs is sent.

        Stamps last_attempted_at on every job still claimed under the job's
        claim token, so release_stale_claims() only reclaims batches whose
        worker stopped making progress.

        Returns:
            True if ``job`` is still claimed under its token. False means the
            claim was released (and possibly re-claimed elsewhere); the job
            must not be sent.
        """
        if job.claim_token is None:
            return False
        if now is None:
            now = time.time()

        with self._get_connection() as conn:
            conn.execute(
                """UPDATE email_queue SET last_attempted_at = ?, updated_at = ?
                   WHERE claim_token = ? AND state = ?""",
                (now, now, job.claim_token, JobState.CLAIMED.value),
            )
            row = conn.execute(
                "SELECT 1 FROM email_queue WHERE id = ? AND claim_token = ? AND state = ?",
                (job.id, job.claim_token, JobState.CLAIMED.value),
            ).fetchone()

        if row is None:
            log_debug(f"Job {job.id}: claim no longer held, skipping delivery")
        return row is not None

    def mark_sent(
        self,
        job_id: int,
        now: Optional[float] = None,
        claim_token: Optional[str] = None,
    ) -> bool:
        """
        Transition a claimed job to sent and stamp sent_at.

        Args:
            job_id: Claimed job
            now: Current time (default: time.time())
            claim_token: When given, only a claim under this token is completed

        Returns:
            True if the job moved to sent, False if it was not claimed
            (already sent, failed, released or unknown); the call is then a no-op
        """
        if now is None:
            now = time.time()

        guard, sources = _state_guard(JobState.SENT)
        sql = f"""UPDATE email_queue
                  SET state = ?, sent_at = ?, updated_at = ?
                  WHERE id = ? AND {guard}"""
        params = [JobState.SENT.value, now, now, job_id, *sources]
        if claim_token is not None:
            sql += " AND claim_token = ?"
            params.append(claim_token)

        with self._get_connection() as conn:
            updated = conn.execute(sql, params).rowcount == 1

        if updated:
            log_trace(f"Job {job_id} sent")
        else:
            log_trace(f"mark_sent ignored for job {job_id} (not claimed)")
        return updated

    def mark_failed(
        self,
        job_id: int,
        error_message: str,
        retry_policy: 'RetryPolicy',
        now: Optional[float] = None,
        claim_token: Optional[str] = None,
    ) -> Optional[JobState]:
        """
        Record a failed delivery attempt for a claimed job.

        Increments attempts. With attempts left the job returns to pending
        with not_before pushed out by the retry policy; otherwise it becomes
        failed for good.

        Args:
            job_id: Claimed job
            error_message: Reason stored in last_error
            retry_policy: Supplies delay(attempt_number) in seconds
            now: Current time (default: time.time())
            claim_token: When given, only a claim under this token is failed

        Returns:
            The job's new state (PENDING or FAILED), or None if the job was
            not claimed and nothing changed
        """
        if now is None:
            now = time.time()

        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                """SELECT id, state, attempts, max_attempts, claim_token
                   FROM email_queue WHERE id = ?""",
                (job_id,),
            ).fetchone()
            if (
                row is None
                or not JobState(row['state']).can_transition_to(JobState.FAILED)
                or (claim_token is not None and row['claim_token'] != claim_token)
            ):
                log_trace(f"mark_failed ignored for job {job_id} (not claimed)")
                return None
            new_state = self._record_failure(conn, row, error_message, retry_policy, now)

        return new_state

    def _record_failure(
        self,
        conn: sqlite3.Connection,
        row: sqlite3.Row,
        error_message: str,
        retry_policy: 'RetryPolicy',
        now: float,
    ) -> Optional[JobState]:
        """Apply the retry-or-fail transition to one claimed row (caller holds the write lock)."""
        max_attempts = row['max_attempts']
        attempts = min(row['attempts'] + 1, max_attempts)
        error_message = (error_message or '')[:MAX_ERROR_LENGTH]
        new_state = JobState.PENDING if attempts < max_attempts else JobState.FAILED
        if not JobState(row['state']).can_transition_to(new_state):
            return None

        not_before = now + retry_policy.delay(attempts) if new_state == JobState.PENDING else None
        cursor = conn.execute(
            """UPDATE email_queue
               SET state = ?, attempts = ?, not_before = COALESCE(?, not_before),
                   last_error = ?, claim_token = NULL, updated_at = ?
               WHERE id = ? AND state = ? AND attempts = ?""",
            (new_state.value, attempts, not_before, error_message, now,
             row['id'], row['state'], row['attempts']),
        )
        if cursor.rowcount != 1:
            return None

        if new_state == JobState.PENDING:
            delay = not_before - now
            log_debug(f"Job {row['id']} attempt {attempts}/{max_attempts} failed, retry in {delay / 60:.0f}m: {error_message}")
        else:
            log_warn(f"Job {row['id']} failed permanently after {attempts} attempt(s): {error_message}")
        return new_state

    def release_stale_claims(
        self,
        claim_timeout: float,
        retry_policy: 'RetryPolicy',
        now: Optional[float] = None,
    ) -> int:
        """
        Fail claimed jobs whose worker stopped reporting back.

        A claim whose batch has not started a send for ``claim_timeout``
        seconds (worker crashed or was killed mid-batch) counts as a failed
        attempt, so the attempt ceiling still holds for jobs that keep
        getting orphaned. Batches that are still sending refresh their claim
        through begin_attempt().

        Returns:
            Number of stale claims released
        """
        if now is None:
            now = time.time()
        cutoff = now - claim_timeout

        released = 0
        with self._get_connection(immediate=True) as conn:
            rows = conn.execute(
                """SELECT id, state, attempts, max_attempts FROM email_queue
                   WHERE state = ? AND last_attempted_at < ?""",
                (JobState.CLAIMED.value, cutoff),
            ).fetchall()
            for row in rows:
                if self._record_failure(conn, row, "claim expired", retry_policy, now) is not None:
                    released += 1

        if released:
            log_warn(f"Released {released} stale claim(s) older than {claim_timeout:.0f}s")
        return released

    # =========================================================================
    # Campaign operations
    # =========================================================================

    def cancel_campaign(self, campaign_key: str, now: Optional[float] = None) -> int:
        """
        Cancel every pending job of a campaign.

        Claimed jobs are left alone; an in-flight delivery finishes normally.

        Returns:
            Number of jobs cancelled
        """
        if now is None:
            now = time.time()

        guard, sources = _state_guard(JobState.CANCELLED)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""UPDATE email_queue SET state = ?, updated_at = ?
                    WHERE campaign_key = ? AND {guard}""",
                (JobState.CANCELLED.value, now, campaign_key, *sources),
            )
            cancelled = cursor.rowcount

        log_info(f"Cancelled {cancelled} pending email(s) for campaign: {campaign_key}")
        return cancelled

    def count_active(self, campaign_key: str) -> int:
        """Number of pending or claimed jobs for a campaign."""
        with self._get_connection() as conn:
            row = conn.execute(
                """SELECT COUNT(*) AS c FROM email_queue
                   WHERE campaign_key = ? AND state IN (?, ?)""",
                (campaign_key, JobState.PENDING.value, JobState.CLAIMED.value),
            ).fetchone()
        return row['c']

    def retry_failed(self, job_id: int, now: Optional[float] = None) -> bool:
        """
        Explicitly send a failed job back to pending with a fresh attempt budget.

        Refused when the recipient already has an active job in the same
        campaign (a newer run picked them up).

        Returns:
            True if the job was re-queued
        """
        if now is None:
            now = time.time()

        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                """SELECT id, state, campaign_key, recipient, recipient_key
                   FROM email_queue WHERE id = ?""",
                (job_id,),
            ).fetchone()
            if row is None:
                return False
            # Only a finished job can be revived; CLAIMED -> PENDING is a retry, not a revival
            state = JobState(row['state'])
            if not (state.is_terminal and state.can_transition_to(JobState.PENDING)):
                return False

            active = conn.execute(
                """SELECT 1 FROM email_queue
                   WHERE campaign_key = ? AND recipient_key = ? AND state IN (?, ?)""",
                (row['campaign_key'], row['recipient_key'],
                 JobState.PENDING.value, JobState.CLAIMED.value),
            ).fetchone()
            if active is not None:
                log_debug(f"Job {job_id} not re-queued: {row['recipient']} already active in {row['campaign_key']}")
                return False

            cursor = conn.execute(
                """UPDATE email_queue
                   SET state = ?, attempts = 0, not_before = ?, updated_at = ?
                   WHERE id = ? AND state = ?""",
                (JobState.PENDING.value, now, now, job_id, row['state']),
            )
            requeued = cursor.rowcount == 1

        if requeued:
            log_info(f"Re-queued failed job {job_id}")
        return requeued

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, job_id: int) -> Optional[JobRecord]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM email_queue WHERE id = ?", (job_id,)).fetchone()
        return JobRecord.from_row(row) if row is not None else None

    def list_jobs(
        self,
        state: Optional[JobState] = None,
        campaign_key: Optional[str] = None,
        limit: int = 100,
    ) -> List[JobRecord]:
        """List jobs, optionally filtered by state and campaign, oldest first."""
        clauses = []
        params: list = []
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if campaign_key is not None:
            clauses.append("campaign_key = ?")
            params.append(campaign_key)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))

        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM email_queue {where} ORDER BY id ASC LIMIT ?",
                params,
            ).fetchall()
        return [JobRecord.from_row(row) for row in rows]

    def stats(self) -> dict:
        """
        Count jobs by state.

        Returns:
            Dict with a key per state value plus 'total', e.g.
            {'pending': 3, 'claimed': 0, 'sent': 7, 'failed': 0,
             'cancelled': 0, 'total': 10}
        """
        stats = {state.value: 0 for state in JobState}
        stats['total'] = 0

        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT state, COUNT(*) AS count FROM email_queue GROUP BY state"
            )
            for row in cursor:
                stats[row['state']] = row['count']
                stats['total'] += row['count']

        return stats

    # =========================================================================
    # Retention
    # =========================================================================

    def cleanup(self, older_than: float) -> int:
        """
        Delete sent, failed and cancelled jobs last updated before a cutoff.

        Args:
            older_than: Unix timestamp cutoff

        Returns:
            Number of jobs deleted
        """
        terminal = [state.value for state in TERMINAL_STATES]
        placeholders = ','.join('?' * len(terminal))

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"DELETE FROM email_queue WHERE state IN ({placeholders}) AND updated_at < ?",
                (*terminal, older_than),
            )
            deleted = cursor.rowcount

        if deleted:
            log_info(f"Cleaned up {deleted} finished email(s) from queue")
        return deleted

    def delete_older_than(self, days: int = 30, now: Optional[float] = None) -> int:
        """Delete finished jobs older than ``days`` days."""
        if now is None:
            now = time.time()
        return self.cleanup(older_than=now - days * 86400)
