"""The three time-triggered job classes driven by the scheduler tick.

Each processor reads its own due rows and walks them in query order. A storage
error aborts the rest of the batch; the untouched rows keep their flags and are
picked up again by the next poll.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from .callbacks import Notifier
from .logger import get_logger
from .models import ScheduledSendRow, SendAttachment
from .persistence import Persistence
from .prometheus import SchedulerMetrics
from .retry import DeliveryFailure, RetryPolicy

NO_SUBJECT = "(no subject)"
UNKNOWN_SENDER = "Unknown"
DEFAULT_SEND_TIMEOUT = 60.0

_attachments_adapter = TypeAdapter(List[SendAttachment])


def parse_recipients(value: Optional[str]) -> Optional[List[str]]:
    """Split a comma separated list, dropping blanks. ``None`` when nothing is left."""
    if not value:
        return None
    items = [part.strip() for part in value.split(",") if part.strip()]
    return items or None


def parse_attachments(value: Optional[str], logger=None) -> Optional[List[SendAttachment]]:
    """Decode ``attachments_json``. Malformed data is logged and treated as absent."""
    if not value:
        return None
    try:
        return _attachments_adapter.validate_python(json.loads(value))
    except (json.JSONDecodeError, ValidationError) as exc:
        (logger or get_logger()).warning("Ignoring malformed attachments_json: %s", exc)
        return None


class _Job(ABC):
    name = "job"

    def __init__(self, persistence: Persistence, notifier: Notifier, metrics: SchedulerMetrics, logger=None):
        self.persistence = persistence
        self.notifier = notifier
        self.metrics = metrics
        self.logger = logger or get_logger()

    @abstractmethod
    async def run(self, now_ts: int) -> int:
        """Process every row due at ``now_ts`` and return how many were handled."""
        ...


class SnoozeRestorer(_Job):
    """Bring snoozed emails back to their folder once ``snooze_until`` has passed."""

    name = "snooze"

    async def run(self, now_ts: int) -> int:
        due = await self.persistence.fetch_due_snoozes(now_ts)
        for snoozed in due:
            await self.persistence.restore_snooze(snoozed)
            self.logger.debug("Snooze restored: email=%s", snoozed.email_id)
            self.metrics.inc_snooze_restored(snoozed.account_id)
            self.notifier.snooze_restored(snoozed.email_id, snoozed.account_id, snoozed.original_folder_id)
        return len(due)


class ScheduledSendDispatcher(_Job):
    """Deliver due scheduled sends, one at a time, routing failures through the retry policy."""

    name = "scheduled_send"

    def __init__(
        self,
        persistence: Persistence,
        notifier: Notifier,
        metrics: SchedulerMetrics,
        delivery,
        *,
        retry_policy: RetryPolicy | None = None,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        logger=None,
    ):
        super().__init__(persistence, notifier, metrics, logger)
        self.delivery = delivery
        self.retry_policy = retry_policy or RetryPolicy()
        self.send_timeout = float(send_timeout)

    async def run(self, now_ts: int) -> int:
        due = await self.persistence.fetch_due_scheduled_sends(now_ts)
        dispatched = 0
        for scheduled in due:
            # Claim before anything else so an overlapping run cannot pick it up
            if not await self.persistence.claim_scheduled_send(scheduled.id):
                self.logger.debug("Scheduled send %s already claimed, skipping", scheduled.id)
                continue
            await self._dispatch(scheduled)
            dispatched += 1
        return dispatched

    async def _dispatch(self, scheduled: ScheduledSendRow) -> None:
        to_list = parse_recipients(scheduled.to_email) or []
        cc_list = parse_recipients(scheduled.cc)
        bcc_list = parse_recipients(scheduled.bcc)
        attachments = parse_attachments(scheduled.attachments_json, self.logger)

        failure: DeliveryFailure | None = None
        deadline = asyncio.timeout(self.send_timeout)
        try:
            async with deadline:
                success = await self.delivery.send_email(
                    scheduled.account_id,
                    to_list,
                    scheduled.subject,
                    scheduled.body_html,
                    cc_list,
                    bcc_list,
                    attachments,
                )
            if not success:
                failure = DeliveryFailure.rejected()
        except Exception as exc:
            if isinstance(exc, TimeoutError) and deadline.expired():
                failure = DeliveryFailure.timed_out(self.send_timeout)
            else:
                failure = DeliveryFailure.from_exception(exc)

        if failure is not None:
            await self._handle_failure(scheduled, failure)
            return

        await self.persistence.complete_scheduled_send(scheduled.id, scheduled.draft_id)
        self.logger.debug("Scheduled send completed: id=%s", scheduled.id)
        self.metrics.inc_sent(scheduled.account_id)
        self.notifier.scheduled_send_result(scheduled.id, True)

    async def _handle_failure(self, scheduled: ScheduledSendRow, failure: DeliveryFailure) -> None:
        decision = await self.retry_policy.apply(self.persistence, scheduled, failure)
        if decision.terminal:
            self.logger.error(
                "Scheduled send failed permanently: id=%s error=%s", scheduled.id, decision.error_message
            )
            self.metrics.inc_failed(scheduled.account_id)
            self.notifier.scheduled_send_result(scheduled.id, False, decision.error_message)
            return
        self.logger.warning(
            "Scheduled send retry %d/%d: id=%s error=%s",
            decision.retry_count,
            self.retry_policy.max_retries,
            scheduled.id,
            failure.render(),
        )
        self.metrics.inc_retried(scheduled.account_id)


class ReminderTrigger(_Job):
    """Fire reminders whose ``remind_at`` has passed."""

    name = "reminder"

    async def run(self, now_ts: int) -> int:
        due = await self.persistence.fetch_due_reminders(now_ts)
        for reminder in due:
            await self.persistence.trigger_reminder(reminder.id)
            self.logger.debug("Reminder triggered: email=%s", reminder.email_id)
            self.metrics.inc_reminder_triggered(reminder.account_id)
            self.notifier.reminder_due(
                reminder.email_id,
                reminder.account_id,
                reminder.subject or NO_SUBJECT,
                reminder.from_email or UNKNOWN_SENDER,
            )
        return len(due)
