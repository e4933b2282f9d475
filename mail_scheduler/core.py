"""Core orchestration logic for the mail scheduler."""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from .callbacks import Notifier, SchedulerCallbacks
from .jobs import DEFAULT_SEND_TIMEOUT, ReminderTrigger, ScheduledSendDispatcher, SnoozeRestorer
from .logger import get_logger
from .persistence import Persistence
from .prometheus import SchedulerMetrics
from .retry import MAX_RETRIES, RetryPolicy

POLL_INTERVAL_SECONDS = 30.0
INITIAL_DELAY_SECONDS = 2.0


class SchedulerEngine:
    """Poll storage on a fixed interval and run snooze, send and reminder jobs.

    Construct one engine at the composition root and hand it to whoever needs
    it. Ticks never overlap: a tick requested while another one is still
    running is skipped.
    """

    def __init__(
        self,
        *,
        persistence: Persistence,
        delivery,
        logger=None,
        metrics: SchedulerMetrics | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        initial_delay: float = INITIAL_DELAY_SECONDS,
        max_retries: int = MAX_RETRIES,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        clock: Callable[[], int] | None = None,
        event_queue_size: int | None = None,
    ):
        """Prepare the runtime collaborators and timer state."""
        self.logger = logger or get_logger()
        self.persistence = persistence
        self.delivery = delivery
        self.metrics = metrics or SchedulerMetrics()
        self.notifier = Notifier(self.logger, queue_size=event_queue_size)
        self._clock = clock or self._utc_now_epoch
        self._poll_interval = max(0.01, float(poll_interval))
        self._initial_delay = max(0.0, float(initial_delay))

        self.snoozes = SnoozeRestorer(persistence, self.notifier, self.metrics, self.logger)
        self.scheduled_sends = ScheduledSendDispatcher(
            persistence,
            self.notifier,
            self.metrics,
            delivery,
            retry_policy=RetryPolicy(max_retries),
            send_timeout=send_timeout,
            logger=self.logger,
        )
        self.reminders = ReminderTrigger(persistence, self.notifier, self.metrics, self.logger)

        self._timer: Optional[asyncio.Task] = None
        self._deferred: Optional[asyncio.TimerHandle] = None
        self._tick_lock = asyncio.Lock()
        self._inflight: Set[asyncio.Task] = set()

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now_epoch() -> int:
        """Return the current UTC timestamp as seconds since epoch."""
        return int(datetime.now(timezone.utc).timestamp())

    @property
    def running(self) -> bool:
        return self._timer is not None

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_lock.locked()

    def set_callbacks(self, callbacks: SchedulerCallbacks | None) -> None:
        """Register the host notification interface."""
        self.notifier.set_callbacks(callbacks)

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start polling. Calling it again while running does nothing."""
        if self._timer is not None:
            return
        self.logger.info(
            "Scheduler engine starting (poll every %ss, first run in %ss)",
            self._poll_interval,
            self._initial_delay,
        )
        loop = asyncio.get_running_loop()
        self._timer = asyncio.create_task(self._interval_loop(), name="scheduler-interval")
        # First run is deferred so startup work is not blocked by the first poll
        self._deferred = loop.call_later(self._initial_delay, self.run_now)

    async def stop(self, wait: bool = True) -> None:
        """Stop polling. A tick already running is left to finish."""
        if self._deferred is not None:
            self._deferred.cancel()
            self._deferred = None
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        if wait and self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self.logger.info("Scheduler engine stopped.")

    async def _interval_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            self.run_now()

    def run_now(self) -> bool:
        """Request a tick in the background. Returns ``False`` if one is already running."""
        if self._tick_lock.locked():
            self._note_skipped()
            return False
        task = asyncio.create_task(self.tick(), name="scheduler-tick")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return True

    def _note_skipped(self) -> None:
        self.logger.info("Previous scheduler tick still running; skipping this one")
        self.metrics.inc_tick_skipped()

    # ------------------------------------------------------------------- ticking
    async def tick(self) -> bool:
        """Run every job class once. Returns ``False`` when skipped by the single-flight guard."""
        if self._tick_lock.locked():
            self._note_skipped()
            return False
        async with self._tick_lock:
            started = time.monotonic()
            for job in (self.snoozes, self.scheduled_sends, self.reminders):
                try:
                    processed = await job.run(self._clock())
                except Exception as exc:
                    self.logger.exception("Scheduler %s error: %s", job.name, exc)
                    self.metrics.inc_job_error(job.name)
                    continue
                if processed:
                    self.logger.debug("Scheduler %s processed=%d", job.name, processed)
            await self._refresh_due_gauge()
            self.metrics.observe_tick(time.monotonic() - started)
        return True

    async def _refresh_due_gauge(self) -> None:
        try:
            counts = await self.persistence.count_due(self._clock())
        except Exception:
            self.logger.exception("Failed to refresh due gauge")
            return
        for job, value in counts.items():
            self.metrics.set_due(job, value)

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the host control commands."""
        payload = payload or {}
        if cmd == "run now":
            return {"ok": True, "started": self.run_now()}
        if cmd == "addAccount":
            await self.persistence.add_account(payload)
            return {"ok": True}
        if cmd == "listAccounts":
            return {"ok": True, "accounts": await self.persistence.list_accounts()}
        if cmd == "snoozeEmail":
            email_id = payload.get("email_id")
            snooze_until = payload.get("snooze_until")
            if not email_id or snooze_until is None:
                return {"ok": False, "error": "missing 'email_id' or 'snooze_until'"}
            try:
                entry = await self.persistence.snooze_email(
                    payload.get("id") or uuid.uuid4().hex, email_id, int(snooze_until)
                )
            except ValueError as exc:
                return {"ok": False, "error": str(exc)}
            return {"ok": True, "snoozed": entry}
        if cmd == "unsnoozeEmail":
            email_id = payload.get("email_id")
            if not email_id:
                return {"ok": False, "error": "missing 'email_id'"}
            restored = await self.persistence.unsnooze_email(email_id)
            if restored is None:
                return {"ok": False, "error": "email is not snoozed"}
            self.notifier.snooze_restored(restored.email_id, restored.account_id, restored.original_folder_id)
            return {"ok": True}
        if cmd == "listSnoozed":
            return {"ok": True, "snoozed": await self.persistence.list_snoozed(payload.get("account_id"))}
        if cmd == "scheduleSend":
            entry = dict(payload)
            entry.setdefault("id", uuid.uuid4().hex)
            if not entry.get("account_id") or entry.get("send_at") is None:
                return {"ok": False, "error": "missing 'account_id' or 'send_at'"}
            try:
                scheduled_id = await self.persistence.create_scheduled_send(entry)
            except ValueError as exc:
                return {"ok": False, "error": str(exc)}
            return {"ok": True, "id": scheduled_id}
        if cmd == "updateScheduledSend":
            scheduled_id = payload.get("id")
            if not scheduled_id:
                return {"ok": False, "error": "missing 'id'"}
            fields = {key: value for key, value in payload.items() if key != "id"}
            try:
                updated = await self.persistence.update_scheduled_send(scheduled_id, fields)
            except ValueError as exc:
                return {"ok": False, "error": str(exc)}
            if not updated:
                return {"ok": False, "error": "scheduled send not found or no longer pending"}
            return {"ok": True}
        if cmd == "cancelScheduledSend":
            scheduled_id = payload.get("id")
            if not scheduled_id:
                return {"ok": False, "error": "missing 'id'"}
            if not await self.persistence.cancel_scheduled_send(scheduled_id):
                return {"ok": False, "error": "scheduled send not found or already in flight"}
            return {"ok": True}
        if cmd == "listScheduledSends":
            try:
                sends = await self.persistence.list_scheduled_sends(payload.get("account_id"), payload.get("status"))
            except ValueError as exc:
                return {"ok": False, "error": str(exc)}
            return {"ok": True, "scheduled": sends}
        if cmd == "addReminder":
            entry = dict(payload)
            entry.setdefault("id", uuid.uuid4().hex)
            if not entry.get("email_id") or not entry.get("account_id") or entry.get("remind_at") is None:
                return {"ok": False, "error": "missing 'email_id', 'account_id' or 'remind_at'"}
            return {"ok": True, "id": await self.persistence.create_reminder(entry)}
        if cmd == "cancelReminder":
            reminder_id = payload.get("id")
            if not reminder_id:
                return {"ok": False, "error": "missing 'id'"}
            if not await self.persistence.cancel_reminder(reminder_id):
                return {"ok": False, "error": "reminder not found or already triggered"}
            return {"ok": True}
        if cmd == "listReminders":
            reminders = await self.persistence.list_reminders(
                payload.get("account_id"), bool(payload.get("include_triggered", False))
            )
            return {"ok": True, "reminders": reminders}
        return {"ok": False, "error": "unknown command"}
