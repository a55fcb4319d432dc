"""
Campaign composition: turn a recipient list into queued jobs.

One job per (campaign, recipient). The queue's partial unique index makes a
second enqueue for a recipient who still has a pending or claimed job in the
same campaign a reported duplicate, so re-running a composition never sends
anyone the same campaign twice at once.

Composition only enqueues; delivery happens when a BatchProcessor runs.
"""

import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union, TYPE_CHECKING

from campaign.templates import PayloadTemplate, Recipient, TemplateError
from mail_queue.exceptions import EnqueueResult, StorageError
from mail_queue.models import DEFAULT_MAX_ATTEMPTS, DEFAULT_PRIORITY
from shared.log import create_logger
from validation.sanitizers import is_valid_recipient, normalize_recipient

if TYPE_CHECKING:
    from mail_queue.store import EmailQueue

log_trace, log_debug, log_info, log_warn, log_error = create_logger("Composer")


@dataclass
class ComposeResult:
    """Counts from one compose() call."""
    queued: int = 0
    skipped_duplicate: int = 0
    failed: int = 0
    # (recipient, reason) for each failure, for the caller to report
    errors: list = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.queued + self.skipped_duplicate + self.failed


class CampaignComposer:
    """
    Enqueues one rendered email per recipient of a campaign.

    Usage:
        composer = CampaignComposer(queue)
        composer.cancel_previous_run('newsletter')   # optional, caller decides
        result = composer.compose('newsletter', subscribers, template)
    """

    def __init__(
        self,
        queue: 'EmailQueue',
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        priority: int = DEFAULT_PRIORITY,
    ):
        self.queue = queue
        self.max_attempts = max_attempts
        self.priority = priority

    def cancel_previous_run(self, campaign_key: str) -> int:
        """Cancel still-pending jobs of an earlier run of this campaign."""
        return self.queue.cancel_campaign(campaign_key)

    def compose(
        self,
        campaign_key: str,
        recipients: Iterable[Union[Recipient, str, dict]],
        template: PayloadTemplate,
        priority: Optional[int] = None,
        not_before: Optional[float] = None,
    ) -> ComposeResult:
        """
        Render and enqueue the campaign for every recipient.

        A bad recipient, a render error or a storage error is counted as
        failed and the loop moves on to the next recipient.

        Args:
            campaign_key: Logical send identifier (e.g. "newsletter")
            recipients: Recipient objects, bare addresses or subscriber dicts
            template: Campaign template rendered per recipient
            priority: Job priority (default: composer priority)
            not_before: Earliest send time for the whole run (default: now)

        Returns:
            ComposeResult with queued / skipped_duplicate / failed counts
        """
        if not campaign_key or not campaign_key.strip():
            raise ValueError("campaign_key cannot be empty")

        priority = self.priority if priority is None else priority
        now = time.time()
        result = ComposeResult()

        for raw in recipients:
            try:
                recipient = Recipient.coerce(raw)
            except TypeError as e:
                result.failed += 1
                result.errors.append((repr(raw), str(e)))
                continue

            email = normalize_recipient(recipient.email)
            if not is_valid_recipient(email):
                log_debug(f"Skipping invalid recipient {recipient.email!r} in {campaign_key}")
                result.failed += 1
                result.errors.append((recipient.email, "invalid address"))
                continue

            try:
                payload = template.render(recipient)
                outcome = self.queue.enqueue(
                    email,
                    payload,
                    campaign_key,
                    priority=priority,
                    max_attempts=self.max_attempts,
                    not_before=not_before,
                    now=now,
                )
            except TemplateError as e:
                log_warn(f"Could not render {campaign_key} for {email}: {e}")
                result.failed += 1
                result.errors.append((email, str(e)))
                continue
            except StorageError as e:
                log_error(f"Could not queue {campaign_key} for {email}: {e}")
                result.failed += 1
                result.errors.append((email, str(e)))
                continue

            if outcome.is_duplicate:
                result.skipped_duplicate += 1
            else:
                result.queued += 1

        log_info(
            f"Composed {campaign_key}: {result.queued} queued, "
            f"{result.skipped_duplicate} already queued, {result.failed} failed"
        )
        return result

    def queue_single(
        self,
        recipient: Union[Recipient, str, dict],
        template: PayloadTemplate,
        campaign_key: str,
        priority: Optional[int] = None,
    ) -> EnqueueResult:
        """
        Queue one email outside a bulk run (custom or test send).

        Raises:
            ValueError: Invalid recipient address or unrenderable template
            StorageError: Database failure
        """
        recipient = Recipient.coerce(recipient)
        email = normalize_recipient(recipient.email)
        if not is_valid_recipient(email):
            raise ValueError(f"Invalid recipient address: {recipient.email!r}")

        payload = template.render(recipient)
        result = self.queue.enqueue(
            email,
            payload,
            campaign_key,
            priority=self.priority if priority is None else priority,
            max_attempts=self.max_attempts,
        )
        log_trace(f"queue_single {campaign_key} -> {email}: {result.outcome.value}")
        return result
