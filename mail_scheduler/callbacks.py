"""Host notifications emitted by the scheduler.

Notifications are best-effort and never block a tick: callbacks run inline,
their errors are logged, and coroutine callbacks are scheduled without being
awaited. When the notifier is built with a queue size, each notification is
also published on a bounded queue for consumers that prefer to pull events.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set

from .logger import get_logger

SnoozeRestoreCallback = Callable[[str, str, str], Any]
ReminderDueCallback = Callable[[str, str, str, str], Any]
ScheduledSendResultCallback = Callable[..., Any]


@dataclass
class SchedulerCallbacks:
    """Callbacks registered by the host application. All of them are optional."""

    on_snooze_restore: Optional[SnoozeRestoreCallback] = None
    on_reminder_due: Optional[ReminderDueCallback] = None
    on_scheduled_send_result: Optional[ScheduledSendResultCallback] = None


class Notifier:
    """Deliver engine events to the host without letting it interfere with processing."""

    def __init__(self, logger=None, queue_size: Optional[int] = None):
        self.logger = logger or get_logger()
        self.callbacks: Optional[SchedulerCallbacks] = None
        # Events are only kept when a queue size was requested
        self._queue: Optional[asyncio.Queue[Dict[str, Any]]] = (
            asyncio.Queue(maxsize=queue_size) if queue_size else None
        )
        self._background: Set[asyncio.Task] = set()

    def set_callbacks(self, callbacks: Optional[SchedulerCallbacks]) -> None:
        self.callbacks = callbacks

    # ------------------------------------------------------------------ events
    def snooze_restored(self, email_id: str, account_id: str, folder_id: str) -> None:
        callback = self.callbacks.on_snooze_restore if self.callbacks else None
        self._dispatch(
            callback,
            (email_id, account_id, folder_id),
            {"type": "snooze_restored", "email_id": email_id, "account_id": account_id, "folder_id": folder_id},
        )

    def reminder_due(self, email_id: str, account_id: str, subject: str, from_email: str) -> None:
        callback = self.callbacks.on_reminder_due if self.callbacks else None
        self._dispatch(
            callback,
            (email_id, account_id, subject, from_email),
            {
                "type": "reminder_due",
                "email_id": email_id,
                "account_id": account_id,
                "subject": subject,
                "from_email": from_email,
            },
        )

    def scheduled_send_result(self, scheduled_id: str, success: bool, error: Optional[str] = None) -> None:
        callback = self.callbacks.on_scheduled_send_result if self.callbacks else None
        args: tuple = (scheduled_id, True) if success else (scheduled_id, False, error)
        event: Dict[str, Any] = {"type": "scheduled_send_result", "scheduled_id": scheduled_id, "success": success}
        if not success:
            event["error"] = error
        self._dispatch(callback, args, event)

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield published events as they arrive."""
        if self._queue is None:
            raise RuntimeError("Event queue is disabled; pass queue_size to enable it")
        while True:
            yield await self._queue.get()

    def pending_events(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    # --------------------------------------------------------------- internals
    def _dispatch(self, callback: Optional[Callable[..., Any]], args: tuple, event: Dict[str, Any]) -> None:
        if self._queue is not None:
            event["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            try:
                self._queue.put_nowait(event)
            except asyncio.QueueFull:
                self.logger.warning("Event queue full; dropping %s event", event["type"])
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception:
            self.logger.exception("Host callback for %s raised", event["type"])
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background.add(task)
            task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Asynchronous host callback failed: %s", exc)
