"""Pydantic models for the rows read by the scheduler.

Each due-query returns its own record type so that malformed storage rows are
rejected at the boundary instead of surfacing as ``KeyError`` halfway through
a batch.

Models:
    - ScheduledSendStatus: lifecycle states of a scheduled send
    - SnoozedRow: a snooze entry waiting to be restored
    - ScheduledSendRow: an outbound message waiting to be delivered
    - ReminderRow: a reminder joined with its email's subject and sender
    - SendAttachment: an attachment handed to the delivery collaborator
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ScheduledSendStatus(str, Enum):
    """States of a scheduled send.

    Transitions are monotonic: ``pending -> sending -> sent``,
    ``sending -> pending`` (with a higher retry count) or ``sending -> failed``.
    """

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class SnoozedRow(_Row):
    """Snooze entry whose ``snooze_until`` has passed."""

    id: str
    email_id: str
    account_id: str
    original_folder_id: str


class ScheduledSendRow(_Row):
    """Scheduled send that is due and still pending.

    Attributes:
        to_email: Comma separated recipient list as typed by the user.
        cc: Comma separated list or ``None``.
        bcc: Comma separated list or ``None``.
        attachments_json: Serialized list of :class:`SendAttachment` or ``None``.
        draft_id: Draft to delete once the message has been sent.
        retry_count: Failed attempts recorded so far.
    """

    id: str
    account_id: str
    to_email: str
    cc: str | None = None
    bcc: str | None = None
    subject: str = ""
    body_html: str = ""
    attachments_json: str | None = None
    draft_id: str | None = None
    retry_count: Annotated[int, Field(ge=0)] = 0

    @field_validator("subject", "body_html", mode="before")
    @classmethod
    def null_text_is_empty(cls, v: Any) -> Any:
        """Columns without a value are sent as empty strings."""
        return "" if v is None else v


class ReminderRow(_Row):
    """Reminder that is due, joined with the email it refers to."""

    id: str
    email_id: str
    account_id: str
    subject: str | None = None
    from_email: str | None = None


class SendAttachment(BaseModel):
    """Attachment payload accepted by the delivery collaborator.

    ``content`` carries the file body encoded as base64. The camelCase
    ``contentType`` key written by the compose window is accepted as an alias.
    """

    model_config = ConfigDict(populate_by_name=True)

    filename: str
    content: str
    content_type: str = Field(default="application/octet-stream", alias="contentType")
