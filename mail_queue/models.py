"""
Job record model and delivery state machine.

A JobRecord is one queued email. Its payload is frozen at enqueue time;
only the queue store mutates delivery state (state, attempts, timestamps,
last_error).
"""

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


DEFAULT_PRIORITY = 5
DEFAULT_MAX_ATTEMPTS = 3

# Maximum stored length of last_error
MAX_ERROR_LENGTH = 500


class JobState(Enum):
    """Delivery states of a queued email."""
    PENDING = "pending"
    CLAIMED = "claimed"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        """Pending and claimed jobs still count against campaign uniqueness."""
        return self in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    def can_transition_to(self, target: 'JobState') -> bool:
        return target in ALLOWED_TRANSITIONS[self]


ACTIVE_STATES = frozenset({JobState.PENDING, JobState.CLAIMED})
TERMINAL_STATES = frozenset({JobState.SENT, JobState.FAILED, JobState.CANCELLED})

# FAILED -> PENDING is only reachable through an explicit retry of a failed job
ALLOWED_TRANSITIONS = {
    JobState.PENDING: frozenset({JobState.CLAIMED, JobState.CANCELLED}),
    JobState.CLAIMED: frozenset({JobState.SENT, JobState.PENDING, JobState.FAILED}),
    JobState.SENT: frozenset(),
    JobState.FAILED: frozenset({JobState.PENDING}),
    JobState.CANCELLED: frozenset(),
}


def states_leading_to(target: JobState) -> frozenset:
    """States from which ALLOWED_TRANSITIONS permits a move to ``target``."""
    return frozenset(
        state for state, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


@dataclass(frozen=True)
class EmailPayload:
    """Subject, body and headers of one email, as rendered for one recipient."""
    subject: str
    body: str
    headers: dict[str, str] = field(default_factory=dict)

    def headers_json(self) -> str:
        return json.dumps(self.headers, sort_keys=True)

    @classmethod
    def from_columns(cls, subject: str, body: str, headers_json: Optional[str]) -> 'EmailPayload':
        headers = json.loads(headers_json) if headers_json else {}
        return cls(subject=subject, body=body, headers={str(k): str(v) for k, v in headers.items()})


@dataclass(frozen=True)
class JobRecord:
    """
    Snapshot of a queued email as read from the store.

    Timestamps are unix seconds (time.time()). Records are immutable views;
    state changes go through EmailQueue methods, never through this object.
    """
    id: int
    recipient: str
    payload: EmailPayload
    campaign_key: str
    priority: int = DEFAULT_PRIORITY
    state: JobState = JobState.PENDING
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    not_before: float = 0.0
    created_at: float = 0.0
    last_attempted_at: Optional[float] = None
    sent_at: Optional[float] = None
    updated_at: float = 0.0
    last_error: Optional[str] = None
    # Set while claimed; identifies the batch holding the job
    claim_token: Optional[str] = None

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    @property
    def is_exhausted(self) -> bool:
        """True for the observable end state of a job that ran out of retries."""
        return self.state == JobState.FAILED and self.attempts >= self.max_attempts

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'JobRecord':
        """Build a record from an email_queue row."""
        return cls(
            id=row['id'],
            recipient=row['recipient'],
            payload=EmailPayload.from_columns(row['subject'], row['body'], row['headers']),
            campaign_key=row['campaign_key'],
            priority=row['priority'],
            state=JobState(row['state']),
            attempts=row['attempts'],
            max_attempts=row['max_attempts'],
            not_before=row['not_before'],
            created_at=row['created_at'],
            last_attempted_at=row['last_attempted_at'],
            sent_at=row['sent_at'],
            updated_at=row['updated_at'],
            last_error=row['last_error'],
            claim_token=row['claim_token'],
        )

    def to_dict(self) -> dict:
        """Plain dict for logging and CLI output."""
        return {
            'id': self.id,
            'recipient': self.recipient,
            'campaign_key': self.campaign_key,
            'subject': self.payload.subject,
            'priority': self.priority,
            'state': self.state.value,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'attempts_remaining': self.attempts_remaining,
            'not_before': self.not_before,
            'created_at': self.created_at,
            'last_attempted_at': self.last_attempted_at,
            'sent_at': self.sent_at,
            'updated_at': self.updated_at,
            'last_error': self.last_error,
        }
