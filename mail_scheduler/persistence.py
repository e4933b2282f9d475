"""SQLite backed persistence used by the scheduler engine."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import ReminderRow, ScheduledSendRow, ScheduledSendStatus, SnoozedRow

# Columns of ``scheduled_sends`` that may be edited while the row is pending
EDITABLE_SCHEDULED_FIELDS = ("to_email", "cc", "bcc", "subject", "body_html", "attachments_json", "send_at")


def _join_addresses(value: Any) -> Optional[str]:
    """Store recipient lists the way the compose window does: comma separated."""
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        items = [str(item).strip() for item in value if item and str(item).strip()]
        return ", ".join(items) if items else None
    text = str(value).strip()
    return text or None


class Persistence:
    """Helper class responsible for reading and writing scheduler state.

    Every public coroutine opens its own connection. Writes that must land
    together go through :meth:`transaction`.
    """

    def __init__(self, db_path: str = "/data/mail_scheduler.db"):
        """Persist data to the given database path."""
        self.db_path = db_path or ":memory:"

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection whose writes are committed all together or not at all."""
        async with aiosqlite.connect(self.db_path) as db:
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def _fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(sql, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def _fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(sql, tuple(params)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a single write statement and commit it immediately."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(sql, tuple(params))
            await db.commit()
            return cursor.rowcount

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    name TEXT,
                    host TEXT NOT NULL,
                    port INTEGER NOT NULL,
                    user TEXT,
                    password TEXT,
                    use_tls INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS emails (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    folder_id TEXT NOT NULL,
                    subject TEXT,
                    from_email TEXT,
                    is_snoozed INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS drafts (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    to_email TEXT,
                    cc TEXT,
                    bcc TEXT,
                    subject TEXT,
                    body_html TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS snoozed_emails (
                    id TEXT PRIMARY KEY,
                    email_id TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    original_folder_id TEXT NOT NULL,
                    snooze_until INTEGER NOT NULL,
                    restored INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_sends (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    to_email TEXT NOT NULL,
                    cc TEXT,
                    bcc TEXT,
                    subject TEXT,
                    body_html TEXT,
                    attachments_json TEXT,
                    draft_id TEXT,
                    send_at INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS reminders (
                    id TEXT PRIMARY KEY,
                    email_id TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    remind_at INTEGER NOT NULL,
                    is_triggered INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_snoozed_due ON snoozed_emails(restored, snooze_until)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_due ON scheduled_sends(status, send_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminders_due ON reminders(is_triggered, remind_at)"
            )
            await db.commit()

    # Accounts -----------------------------------------------------------------
    async def add_account(self, acc: Dict[str, Any]) -> None:
        """Insert or overwrite an SMTP account definition."""
        await self._execute(
            """
            INSERT OR REPLACE INTO accounts (id, email, name, host, port, user, password, use_tls)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                acc["id"],
                acc["email"],
                acc.get("name"),
                acc["host"],
                int(acc["port"]),
                acc.get("user"),
                acc.get("password"),
                None if acc.get("use_tls") is None else (1 if acc.get("use_tls") else 0),
            ),
        )

    @staticmethod
    def _decode_account(account: Dict[str, Any]) -> Dict[str, Any]:
        if "use_tls" in account:
            account["use_tls"] = bool(account["use_tls"]) if account["use_tls"] is not None else None
        return account

    async def list_accounts(self) -> List[Dict[str, Any]]:
        """Return all known accounts without their passwords."""
        rows = await self._fetch_all(
            "SELECT id, email, name, host, port, user, use_tls, created_at FROM accounts ORDER BY id"
        )
        return [self._decode_account(row) for row in rows]

    async def get_account(self, account_id: str) -> Dict[str, Any]:
        """Fetch a single account or raise if it does not exist."""
        account = await self._fetch_one("SELECT * FROM accounts WHERE id=?", (account_id,))
        if not account:
            raise ValueError(f"Account '{account_id}' not found")
        return self._decode_account(account)

    # Emails and drafts ----------------------------------------------------------
    async def upsert_email(self, email: Dict[str, Any]) -> None:
        """Store the mailbox fields the scheduler reads or writes."""
        await self._execute(
            """
            INSERT INTO emails (id, account_id, folder_id, subject, from_email, is_snoozed)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                account_id = excluded.account_id,
                folder_id = excluded.folder_id,
                subject = excluded.subject,
                from_email = excluded.from_email,
                is_snoozed = excluded.is_snoozed
            """,
            (
                email["id"],
                email["account_id"],
                email["folder_id"],
                email.get("subject"),
                email.get("from_email"),
                1 if email.get("is_snoozed") else 0,
            ),
        )

    async def get_email(self, email_id: str) -> Optional[Dict[str, Any]]:
        email = await self._fetch_one("SELECT * FROM emails WHERE id=?", (email_id,))
        if email:
            email["is_snoozed"] = bool(email["is_snoozed"])
        return email

    async def save_draft(self, draft: Dict[str, Any]) -> None:
        """Insert or update a draft."""
        await self._execute(
            """
            INSERT INTO drafts (id, account_id, to_email, cc, bcc, subject, body_html, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(id) DO UPDATE SET
                to_email = excluded.to_email,
                cc = excluded.cc,
                bcc = excluded.bcc,
                subject = excluded.subject,
                body_html = excluded.body_html,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                draft["id"],
                draft["account_id"],
                _join_addresses(draft.get("to")),
                _join_addresses(draft.get("cc")),
                _join_addresses(draft.get("bcc")),
                draft.get("subject"),
                draft.get("body_html"),
            ),
        )

    async def get_draft(self, draft_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one("SELECT * FROM drafts WHERE id=?", (draft_id,))

    # Snoozes ------------------------------------------------------------------
    async def snooze_email(self, snooze_id: str, email_id: str, snooze_until: int) -> Dict[str, Any]:
        """Snooze an email, remembering the folder it must come back to."""
        async with self.transaction() as db:
            async with db.execute("SELECT account_id, folder_id FROM emails WHERE id=?", (email_id,)) as cur:
                row = await cur.fetchone()
            if not row:
                raise ValueError(f"Email '{email_id}' not found")
            account_id, folder_id = row
            await db.execute(
                """
                INSERT INTO snoozed_emails (id, email_id, account_id, original_folder_id, snooze_until)
                VALUES (?, ?, ?, ?, ?)
                """,
                (snooze_id, email_id, account_id, folder_id, int(snooze_until)),
            )
            await db.execute("UPDATE emails SET is_snoozed = 1 WHERE id = ?", (email_id,))
        return {
            "id": snooze_id,
            "email_id": email_id,
            "account_id": account_id,
            "original_folder_id": folder_id,
            "snooze_until": int(snooze_until),
        }

    async def fetch_due_snoozes(self, now_ts: int) -> List[SnoozedRow]:
        """Return snooze entries whose time has come and that are not restored yet."""
        rows = await self._fetch_all(
            """
            SELECT id, email_id, account_id, original_folder_id
            FROM snoozed_emails
            WHERE snooze_until <= ? AND restored = 0
            ORDER BY snooze_until ASC, id ASC
            """,
            (now_ts,),
        )
        return [SnoozedRow.model_validate(row) for row in rows]

    async def restore_snooze(self, row: SnoozedRow) -> None:
        """Move the email back to its folder and flag the entry as restored, atomically."""
        async with self.transaction() as db:
            await db.execute(
                "UPDATE emails SET is_snoozed = 0, folder_id = ? WHERE id = ?",
                (row.original_folder_id, row.email_id),
            )
            await db.execute("UPDATE snoozed_emails SET restored = 1 WHERE id = ?", (row.id,))

    async def unsnooze_email(self, email_id: str) -> Optional[SnoozedRow]:
        """Restore a snoozed email ahead of time. Returns the entry that was restored."""
        entry = await self._fetch_one(
            """
            SELECT id, email_id, account_id, original_folder_id
            FROM snoozed_emails
            WHERE email_id = ? AND restored = 0
            ORDER BY snooze_until DESC, id DESC
            LIMIT 1
            """,
            (email_id,),
        )
        if not entry:
            return None
        row = SnoozedRow.model_validate(entry)
        await self.restore_snooze(row)
        return row

    async def list_snoozed(self, account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return snooze entries that have not been restored yet."""
        sql = """
            SELECT id, email_id, account_id, original_folder_id, snooze_until, created_at
            FROM snoozed_emails
            WHERE restored = 0
        """
        params: Tuple[Any, ...] = ()
        if account_id:
            sql += " AND account_id = ?"
            params = (account_id,)
        sql += " ORDER BY snooze_until ASC, id ASC"
        return await self._fetch_all(sql, params)

    # Scheduled sends ----------------------------------------------------------
    async def create_scheduled_send(self, entry: Dict[str, Any]) -> str:
        """Persist an outbound message to be delivered at ``send_at``."""
        attachments_json = entry.get("attachments_json")
        if attachments_json is None and entry.get("attachments"):
            attachments_json = json.dumps(entry["attachments"])
        to_email = _join_addresses(entry.get("to"))
        if not to_email:
            raise ValueError("missing to")
        await self._execute(
            """
            INSERT INTO scheduled_sends
            (id, account_id, to_email, cc, bcc, subject, body_html, attachments_json, draft_id, send_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry["id"],
                entry["account_id"],
                to_email,
                _join_addresses(entry.get("cc")),
                _join_addresses(entry.get("bcc")),
                entry.get("subject") or "",
                entry.get("body_html") or "",
                attachments_json,
                entry.get("draft_id"),
                int(entry["send_at"]),
            ),
        )
        return entry["id"]

    async def get_scheduled_send(self, scheduled_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one("SELECT * FROM scheduled_sends WHERE id=?", (scheduled_id,))

    async def list_scheduled_sends(
        self, account_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Return scheduled sends, optionally filtered by account and status."""
        clauses: List[str] = []
        params: List[Any] = []
        if account_id:
            clauses.append("account_id = ?")
            params.append(account_id)
        if status:
            clauses.append("status = ?")
            params.append(ScheduledSendStatus(status).value)
        sql = "SELECT * FROM scheduled_sends"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY send_at ASC, id ASC"
        return await self._fetch_all(sql, params)

    async def update_scheduled_send(self, scheduled_id: str, fields: Dict[str, Any]) -> bool:
        """Edit a scheduled send that has not been picked up yet."""
        values: Dict[str, Any] = {}
        for key, value in fields.items():
            if key in ("to", "cc", "bcc"):
                column = "to_email" if key == "to" else key
                values[column] = _join_addresses(value)
            elif key == "attachments":
                values["attachments_json"] = json.dumps(value) if value else None
            elif key == "send_at":
                if value is None:
                    raise ValueError("send_at cannot be null")
                values[key] = int(value)
            elif key in EDITABLE_SCHEDULED_FIELDS:
                values[key] = value
        if "to_email" in values and not values["to_email"]:
            raise ValueError("missing to")
        if not values:
            return False
        assignments = ", ".join(f"{column} = ?" for column in values)
        changed = await self._execute(
            f"UPDATE scheduled_sends SET {assignments} WHERE id = ? AND status = ?",
            (*values.values(), scheduled_id, ScheduledSendStatus.PENDING.value),
        )
        return changed > 0

    async def cancel_scheduled_send(self, scheduled_id: str) -> bool:
        """Delete a scheduled send that is pending or has failed for good."""
        removed = await self._execute(
            "DELETE FROM scheduled_sends WHERE id = ? AND status IN (?, ?)",
            (scheduled_id, ScheduledSendStatus.PENDING.value, ScheduledSendStatus.FAILED.value),
        )
        return removed > 0

    async def fetch_due_scheduled_sends(self, now_ts: int) -> List[ScheduledSendRow]:
        """Return pending scheduled sends whose ``send_at`` has passed."""
        rows = await self._fetch_all(
            """
            SELECT id, account_id, to_email, cc, bcc, subject, body_html,
                   attachments_json, draft_id, retry_count
            FROM scheduled_sends
            WHERE send_at <= ? AND status = ?
            ORDER BY send_at ASC, id ASC
            """,
            (now_ts, ScheduledSendStatus.PENDING.value),
        )
        return [ScheduledSendRow.model_validate(row) for row in rows]

    async def claim_scheduled_send(self, scheduled_id: str) -> bool:
        """Flip a pending row to ``sending``. Returns ``False`` if someone else got it first."""
        changed = await self._execute(
            "UPDATE scheduled_sends SET status = ? WHERE id = ? AND status = ?",
            (ScheduledSendStatus.SENDING.value, scheduled_id, ScheduledSendStatus.PENDING.value),
        )
        return changed == 1

    async def complete_scheduled_send(self, scheduled_id: str, draft_id: Optional[str]) -> None:
        """Mark the send as delivered and drop its draft in the same transaction."""
        async with self.transaction() as db:
            await db.execute(
                "UPDATE scheduled_sends SET status = ? WHERE id = ?",
                (ScheduledSendStatus.SENT.value, scheduled_id),
            )
            if draft_id:
                await db.execute("DELETE FROM drafts WHERE id = ?", (draft_id,))

    async def requeue_scheduled_send(self, scheduled_id: str, retry_count: int) -> None:
        """Put the row back in the queue with an incremented retry counter."""
        await self._execute(
            "UPDATE scheduled_sends SET status = ?, retry_count = ? WHERE id = ?",
            (ScheduledSendStatus.PENDING.value, retry_count, scheduled_id),
        )

    async def fail_scheduled_send(self, scheduled_id: str, retry_count: int, error_message: str) -> None:
        """Mark the row as permanently failed."""
        await self._execute(
            "UPDATE scheduled_sends SET status = ?, retry_count = ?, error_message = ? WHERE id = ?",
            (ScheduledSendStatus.FAILED.value, retry_count, error_message, scheduled_id),
        )

    # Reminders ----------------------------------------------------------------
    async def create_reminder(self, entry: Dict[str, Any]) -> str:
        """Persist a reminder for an email."""
        await self._execute(
            "INSERT INTO reminders (id, email_id, account_id, remind_at) VALUES (?, ?, ?, ?)",
            (entry["id"], entry["email_id"], entry["account_id"], int(entry["remind_at"])),
        )
        return entry["id"]

    async def cancel_reminder(self, reminder_id: str) -> bool:
        """Delete a reminder that has not fired yet."""
        removed = await self._execute(
            "DELETE FROM reminders WHERE id = ? AND is_triggered = 0", (reminder_id,)
        )
        return removed > 0

    async def list_reminders(
        self, account_id: Optional[str] = None, include_triggered: bool = False
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if not include_triggered:
            clauses.append("is_triggered = 0")
        if account_id:
            clauses.append("account_id = ?")
            params.append(account_id)
        sql = "SELECT id, email_id, account_id, remind_at, is_triggered, created_at FROM reminders"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY remind_at ASC, id ASC"
        rows = await self._fetch_all(sql, params)
        for row in rows:
            row["is_triggered"] = bool(row["is_triggered"])
        return rows

    async def fetch_due_reminders(self, now_ts: int) -> List[ReminderRow]:
        """Return untriggered reminders whose ``remind_at`` has passed."""
        rows = await self._fetch_all(
            """
            SELECT r.id, r.email_id, r.account_id, e.subject, e.from_email
            FROM reminders r JOIN emails e ON r.email_id = e.id
            WHERE r.remind_at <= ? AND r.is_triggered = 0
            ORDER BY r.remind_at ASC, r.id ASC
            """,
            (now_ts,),
        )
        return [ReminderRow.model_validate(row) for row in rows]

    async def trigger_reminder(self, reminder_id: str) -> None:
        """Flag a reminder as fired."""
        async with self.transaction() as db:
            await db.execute("UPDATE reminders SET is_triggered = 1 WHERE id = ?", (reminder_id,))

    # Bookkeeping --------------------------------------------------------------
    async def count_due(self, now_ts: int) -> Dict[str, int]:
        """Return how many rows of each job class are currently due."""
        async with aiosqlite.connect(self.db_path) as db:
            counts: Dict[str, int] = {}
            queries: Iterable[Tuple[str, str, Tuple[Any, ...]]] = (
                ("snoozes", "SELECT COUNT(*) FROM snoozed_emails WHERE snooze_until <= ? AND restored = 0", (now_ts,)),
                (
                    "scheduled_sends",
                    "SELECT COUNT(*) FROM scheduled_sends WHERE send_at <= ? AND status = ?",
                    (now_ts, ScheduledSendStatus.PENDING.value),
                ),
                ("reminders", "SELECT COUNT(*) FROM reminders WHERE remind_at <= ? AND is_triggered = 0", (now_ts,)),
            )
            for key, sql, params in queries:
                async with db.execute(sql, params) as cur:
                    row = await cur.fetchone()
                counts[key] = int(row[0]) if row else 0
        return counts
