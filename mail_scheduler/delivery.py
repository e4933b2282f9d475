"""SMTP delivery collaborator used by the scheduled-send dispatcher."""

from __future__ import annotations

import asyncio
import base64
import binascii
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosmtplib

from .logger import get_logger
from .models import SendAttachment
from .persistence import Persistence
from .smtp_pool import SMTPPool


def _split_content_type(content_type: Optional[str]) -> Tuple[str, str]:
    if content_type and "/" in content_type:
        maintype, subtype = content_type.split("/", 1)
        return maintype.strip() or "application", subtype.split(";", 1)[0].strip() or "octet-stream"
    return "application", "octet-stream"


def _decode_content(content: str) -> bytes:
    """Attachment bodies are base64; anything else is sent as UTF-8 text."""
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError):
        return content.encode("utf-8")


class SMTPDelivery:
    """Send HTML messages through the SMTP account stored for ``account_id``.

    ``send_email`` returns ``False`` when the server or the network refuses the
    message and raises when the request itself cannot be served (unknown account).
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        pool: SMTPPool | None = None,
        logger=None,
        send_timeout: float = 30.0,
    ):
        self.persistence = persistence
        self.pool = pool or SMTPPool()
        self.logger = logger or get_logger()
        self._send_timeout = float(send_timeout)

    async def send_email(
        self,
        account_id: str,
        to: Sequence[str],
        subject: str,
        html: str,
        cc: Optional[Sequence[str]] = None,
        bcc: Optional[Sequence[str]] = None,
        attachments: Optional[Sequence[SendAttachment]] = None,
    ) -> bool:
        account = await self.persistence.get_account(account_id)
        msg = self.build_message(account, to, subject, html, cc=cc, attachments=attachments)
        recipients: List[str] = [*to, *(cc or []), *(bcc or [])]

        host, port = account["host"], int(account["port"])
        user = account.get("user") or account["email"]
        use_tls = account.get("use_tls")
        use_tls = port == 465 if use_tls is None else bool(use_tls)
        try:
            smtp = await self.pool.get_connection(host, port, user, account.get("password"), use_tls=use_tls)
            async with asyncio.timeout(self._send_timeout):
                await smtp.send_message(msg, sender=account["email"], recipients=recipients)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            self.logger.warning("SMTP delivery failed for account %s: %s", account_id, exc)
            await self.pool.discard(host, port, user, use_tls=use_tls)
            return False
        self.logger.debug("Message sent for account %s to %d recipient(s)", account_id, len(recipients))
        return True

    @staticmethod
    def build_message(
        account: Dict[str, Any],
        to: Sequence[str],
        subject: str,
        html: str,
        *,
        cc: Optional[Sequence[str]] = None,
        attachments: Optional[Sequence[SendAttachment]] = None,
    ) -> EmailMessage:
        """Translate the send request into an :class:`EmailMessage`. Bcc stays off the headers."""
        msg = EmailMessage()
        msg["From"] = formataddr((account.get("name") or account["email"], account["email"]))
        msg["To"] = ", ".join(to)
        if cc:
            msg["Cc"] = ", ".join(cc)
        msg["Subject"] = subject
        msg.set_content(html, subtype="html")
        for att in attachments or []:
            maintype, subtype = _split_content_type(att.content_type)
            msg.add_attachment(
                _decode_content(att.content), maintype=maintype, subtype=subtype, filename=att.filename
            )
        return msg

    async def close(self) -> None:
        await self.pool.close_all()
