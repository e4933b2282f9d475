import asyncio
import json
import types
from typing import Any, List

import pytest

from mail_scheduler.callbacks import Notifier, SchedulerCallbacks
from mail_scheduler.jobs import (
    _Job,
    ReminderTrigger,
    ScheduledSendDispatcher,
    SnoozeRestorer,
    parse_attachments,
    parse_recipients,
)
from mail_scheduler.persistence import Persistence
from mail_scheduler.prometheus import SchedulerMetrics

NOW = 1_700_000_000


class DummyDelivery:
    def __init__(self):
        self.calls: List[tuple] = []
        self.result: Any = True
        self.delay: float = 0.0

    async def send_email(self, account_id, to, subject, html, cc=None, bcc=None, attachments=None):
        self.calls.append((account_id, to, subject, html, cc, bcc, attachments))
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


class Recorder:
    def __init__(self):
        self.snoozes: List[tuple] = []
        self.reminders: List[tuple] = []
        self.results: List[tuple] = []

    def callbacks(self) -> SchedulerCallbacks:
        return SchedulerCallbacks(
            on_snooze_restore=lambda *args: self.snoozes.append(args),
            on_reminder_due=lambda *args: self.reminders.append(args),
            on_scheduled_send_result=lambda *args: self.results.append(args),
        )


def quiet_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


async def make_env(tmp_path):
    persistence = Persistence(str(tmp_path / "jobs.db"))
    await persistence.init_db()
    recorder = Recorder()
    notifier = Notifier(quiet_logger())
    notifier.set_callbacks(recorder.callbacks())
    return persistence, notifier, recorder, SchedulerMetrics()


async def add_send(persistence, scheduled_id="sch1", retry_count=0, **fields):
    entry = {"id": scheduled_id, "account_id": "a1", "to": "a@x.com", "subject": "S", "body_html": "<b>B</b>"}
    entry.update(fields)
    entry.setdefault("send_at", NOW - 1)
    await persistence.create_scheduled_send(entry)
    if retry_count:
        await persistence.requeue_scheduled_send(scheduled_id, retry_count)


# --------------------------------------------------------------------- parsing
def test_parse_recipients():
    assert parse_recipients("a@x.com, b@x.com") == ["a@x.com", "b@x.com"]
    assert parse_recipients(" a@x.com ,, ,b@x.com,") == ["a@x.com", "b@x.com"]
    assert parse_recipients(None) is None
    assert parse_recipients("") is None
    assert parse_recipients(" , ") is None


def test_parse_attachments():
    parsed = parse_attachments(json.dumps([{"filename": "a.pdf", "content": "AAA=", "contentType": "application/pdf"}]))
    assert parsed[0].filename == "a.pdf"
    assert parsed[0].content_type == "application/pdf"
    assert parse_attachments(None) is None
    assert parse_attachments("{bad json", quiet_logger()) is None
    assert parse_attachments(json.dumps({"filename": "not a list"}), quiet_logger()) is None


# ---------------------------------------------------------------------- snooze
@pytest.mark.asyncio
async def test_snooze_restorer_restores_due_entries(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await persistence.upsert_email({"id": "e1", "account_id": "a1", "folder_id": "f1"})
    await persistence.upsert_email({"id": "e2", "account_id": "a1", "folder_id": "f2"})
    await persistence.snooze_email("s1", "e1", NOW - 10)
    await persistence.snooze_email("s2", "e2", NOW - 5)
    await persistence.upsert_email({"id": "e1", "account_id": "a1", "folder_id": "snoozed", "is_snoozed": True})

    restorer = SnoozeRestorer(persistence, notifier, metrics, quiet_logger())
    assert await restorer.run(NOW) == 2

    email = await persistence.get_email("e1")
    assert email["is_snoozed"] is False
    assert email["folder_id"] == "f1"
    assert recorder.snoozes == [("e1", "a1", "f1"), ("e2", "a1", "f2")]
    assert await restorer.run(NOW) == 0
    assert len(recorder.snoozes) == 2


@pytest.mark.asyncio
async def test_snooze_restorer_aborts_batch_on_storage_error(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    for idx in (1, 2):
        await persistence.upsert_email({"id": f"e{idx}", "account_id": "a1", "folder_id": "f"})
        await persistence.snooze_email(f"s{idx}", f"e{idx}", NOW - 10 + idx)

    original = persistence.restore_snooze
    calls = []

    async def failing_restore(row):
        calls.append(row.id)
        raise RuntimeError("database is locked")

    persistence.restore_snooze = failing_restore
    restorer = SnoozeRestorer(persistence, notifier, metrics, quiet_logger())
    with pytest.raises(RuntimeError):
        await restorer.run(NOW)
    assert calls == ["s1"]
    assert recorder.snoozes == []

    persistence.restore_snooze = original
    assert await restorer.run(NOW) == 2


# -------------------------------------------------------------- scheduled send
@pytest.mark.asyncio
async def test_dispatcher_success_sends_and_deletes_draft(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await persistence.save_draft({"id": "d1", "account_id": "a1", "to": "a@x.com"})
    await add_send(persistence, cc="a@x.com, b@x.com", draft_id="d1")
    delivery = DummyDelivery()

    dispatcher = ScheduledSendDispatcher(persistence, notifier, metrics, delivery, logger=quiet_logger())
    assert await dispatcher.run(NOW) == 1

    assert delivery.calls == [("a1", ["a@x.com"], "S", "<b>B</b>", ["a@x.com", "b@x.com"], None, None)]
    stored = await persistence.get_scheduled_send("sch1")
    assert stored["status"] == "sent"
    assert await persistence.get_draft("d1") is None
    assert recorder.results == [("sch1", True)]


@pytest.mark.asyncio
async def test_dispatcher_first_failure_requeues_silently(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await add_send(persistence)
    delivery = DummyDelivery()
    delivery.result = False

    dispatcher = ScheduledSendDispatcher(persistence, notifier, metrics, delivery, logger=quiet_logger())
    await dispatcher.run(NOW)

    stored = await persistence.get_scheduled_send("sch1")
    assert (stored["status"], stored["retry_count"], stored["error_message"]) == ("pending", 1, None)
    assert recorder.results == []
    # Still due: picked up again by the next poll
    assert [row.id for row in await persistence.fetch_due_scheduled_sends(NOW)] == ["sch1"]


@pytest.mark.asyncio
async def test_dispatcher_last_failure_is_terminal(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await add_send(persistence, retry_count=2)
    delivery = DummyDelivery()
    delivery.result = False

    dispatcher = ScheduledSendDispatcher(persistence, notifier, metrics, delivery, logger=quiet_logger())
    await dispatcher.run(NOW)

    stored = await persistence.get_scheduled_send("sch1")
    assert (stored["status"], stored["retry_count"], stored["error_message"]) == (
        "failed",
        3,
        "SMTP send returned false",
    )
    assert recorder.results == [("sch1", False, "SMTP send returned false")]
    await dispatcher.run(NOW)
    assert len(delivery.calls) == 1


@pytest.mark.asyncio
async def test_dispatcher_exception_message_is_reported(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await add_send(persistence, retry_count=2)
    delivery = DummyDelivery()
    delivery.result = ValueError("Account 'a1' not found")

    dispatcher = ScheduledSendDispatcher(persistence, notifier, metrics, delivery, logger=quiet_logger())
    await dispatcher.run(NOW)

    assert recorder.results == [("sch1", False, "Account 'a1' not found")]


@pytest.mark.asyncio
async def test_dispatcher_retries_until_budget_exhausted(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await add_send(persistence)
    delivery = DummyDelivery()
    delivery.result = ConnectionRefusedError("Connection refused")

    dispatcher = ScheduledSendDispatcher(persistence, notifier, metrics, delivery, logger=quiet_logger())
    for _ in range(5):
        await dispatcher.run(NOW)

    assert len(delivery.calls) == 3
    stored = await persistence.get_scheduled_send("sch1")
    assert (stored["status"], stored["retry_count"]) == ("failed", 3)
    assert recorder.results == [("sch1", False, "Connection refused")]


@pytest.mark.asyncio
async def test_dispatcher_times_out_hung_delivery(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await add_send(persistence, retry_count=2)
    delivery = DummyDelivery()
    delivery.delay = 5

    dispatcher = ScheduledSendDispatcher(
        persistence, notifier, metrics, delivery, send_timeout=0.05, logger=quiet_logger()
    )
    await dispatcher.run(NOW)

    assert recorder.results == [("sch1", False, "Delivery timed out after 0.05s")]


@pytest.mark.asyncio
async def test_dispatcher_ignores_malformed_attachments(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await add_send(persistence, attachments_json="{bad json")
    delivery = DummyDelivery()

    dispatcher = ScheduledSendDispatcher(persistence, notifier, metrics, delivery, logger=quiet_logger())
    await dispatcher.run(NOW)

    assert delivery.calls[0][6] is None
    stored = await persistence.get_scheduled_send("sch1")
    assert (stored["status"], stored["retry_count"]) == ("sent", 0)


@pytest.mark.asyncio
async def test_dispatcher_passes_attachments_and_bcc(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await add_send(
        persistence,
        bcc="hidden@x.com",
        attachments=[{"filename": "a.txt", "content": "aGk=", "contentType": "text/plain"}],
    )
    delivery = DummyDelivery()

    dispatcher = ScheduledSendDispatcher(persistence, notifier, metrics, delivery, logger=quiet_logger())
    await dispatcher.run(NOW)

    _, _, _, _, cc, bcc, attachments = delivery.calls[0]
    assert cc is None
    assert bcc == ["hidden@x.com"]
    assert [(a.filename, a.content, a.content_type) for a in attachments] == [("a.txt", "aGk=", "text/plain")]


@pytest.mark.asyncio
async def test_dispatcher_skips_rows_claimed_elsewhere(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await add_send(persistence, "sch1")
    await add_send(persistence, "sch2", send_at=NOW - 2)
    delivery = DummyDelivery()

    original_fetch = persistence.fetch_due_scheduled_sends

    async def fetch_then_steal(now_ts):
        rows = await original_fetch(now_ts)
        await persistence.claim_scheduled_send("sch1")
        return rows

    persistence.fetch_due_scheduled_sends = fetch_then_steal
    dispatcher = ScheduledSendDispatcher(persistence, notifier, metrics, delivery, logger=quiet_logger())
    assert await dispatcher.run(NOW) == 1
    assert [call[0:2] for call in delivery.calls] == [("a1", ["a@x.com"])]
    assert recorder.results == [("sch2", True)]


@pytest.mark.asyncio
async def test_dispatcher_leaves_future_rows_alone(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await add_send(persistence, send_at=NOW + 60)
    delivery = DummyDelivery()

    dispatcher = ScheduledSendDispatcher(persistence, notifier, metrics, delivery, logger=quiet_logger())
    assert await dispatcher.run(NOW) == 0
    assert delivery.calls == []
    assert (await persistence.get_scheduled_send("sch1"))["status"] == "pending"


# -------------------------------------------------------------------- reminder
@pytest.mark.asyncio
async def test_reminder_trigger_fires_with_defaults(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await persistence.upsert_email(
        {"id": "e1", "account_id": "a1", "folder_id": "inbox", "subject": "Test", "from_email": "x@y.com"}
    )
    await persistence.upsert_email({"id": "e2", "account_id": "a1", "folder_id": "inbox"})
    await persistence.create_reminder({"id": "r1", "email_id": "e1", "account_id": "a1", "remind_at": NOW - 2})
    await persistence.create_reminder({"id": "r2", "email_id": "e2", "account_id": "a1", "remind_at": NOW - 1})

    trigger = ReminderTrigger(persistence, notifier, metrics, quiet_logger())
    assert await trigger.run(NOW) == 2

    assert recorder.reminders == [
        ("e1", "a1", "Test", "x@y.com"),
        ("e2", "a1", "(no subject)", "Unknown"),
    ]
    assert await trigger.run(NOW) == 0
    assert await persistence.list_reminders() == []


@pytest.mark.asyncio
async def test_reminder_trigger_aborts_batch_on_storage_error(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    for idx in (1, 2):
        await persistence.upsert_email({"id": f"e{idx}", "account_id": "a1", "folder_id": "inbox"})
        await persistence.create_reminder(
            {"id": f"r{idx}", "email_id": f"e{idx}", "account_id": "a1", "remind_at": NOW - 10 + idx}
        )

    original = persistence.trigger_reminder
    calls = []

    async def failing_trigger(reminder_id):
        calls.append(reminder_id)
        raise RuntimeError("database is locked")

    persistence.trigger_reminder = failing_trigger
    trigger = ReminderTrigger(persistence, notifier, metrics, quiet_logger())
    with pytest.raises(RuntimeError):
        await trigger.run(NOW)
    assert calls == ["r1"]
    assert recorder.reminders == []
    assert [row["id"] for row in await persistence.list_reminders()] == ["r1", "r2"]

    persistence.trigger_reminder = original
    assert await trigger.run(NOW) == 2
    assert [args[0] for args in recorder.reminders] == ["e1", "e2"]
    assert await persistence.list_reminders() == []


def test_job_base_class_cannot_be_instantiated():
    with pytest.raises(TypeError):
        _Job(None, None, None, quiet_logger())


@pytest.mark.asyncio
async def test_dispatcher_failure_bookkeeping_error_propagates(tmp_path):
    persistence, notifier, recorder, metrics = await make_env(tmp_path)
    await add_send(persistence)
    delivery = DummyDelivery()
    delivery.result = False

    async def failing_requeue(scheduled_id, retry_count):
        raise RuntimeError("database is locked")

    persistence.requeue_scheduled_send = failing_requeue
    dispatcher = ScheduledSendDispatcher(persistence, notifier, metrics, delivery, logger=quiet_logger())
    with pytest.raises(RuntimeError):
        await dispatcher.run(NOW)

    stored = await persistence.get_scheduled_send("sch1")
    assert (stored["status"], stored["retry_count"]) == ("sending", 0)
    assert recorder.results == []
    assert await dispatcher.run(NOW) == 0
