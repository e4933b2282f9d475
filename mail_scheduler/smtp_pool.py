"""Lightweight asyncio-friendly SMTP connection pool."""

import asyncio
import time
from typing import Dict, Optional, Tuple

import aiosmtplib

PoolKey = Tuple[str, int, Optional[str], bool]


class SMTPPool:
    """Reuse one authenticated SMTP connection per server and login."""

    def __init__(self, ttl: int = 300):
        """Create a pool with the given time-to-live, in seconds."""
        self.ttl = ttl
        self.pool: Dict[PoolKey, Tuple[aiosmtplib.SMTP, float, Optional[str]]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, host: str, port: int, user: Optional[str], password: Optional[str], use_tls: bool) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        # Implicit TLS (port 465) when use_tls, plain otherwise
        smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=use_tls, timeout=10.0)

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=15.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            return False

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            pass

    async def get_connection(self, host: str, port: int, user: Optional[str], password: Optional[str], *, use_tls: bool) -> aiosmtplib.SMTP:
        """Return a live connection for the given server and credentials."""
        key: PoolKey = (host, port, user, use_tls)

        async with self.lock:
            entry = self.pool.pop(key, None)

        if entry:
            smtp, last_used, cached_password = entry
            fresh_enough = (time.time() - last_used) < self.ttl
            if cached_password == password and fresh_enough and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[key] = (smtp, time.time(), password)
                return smtp
            await self._close(smtp)

        smtp = await self._connect(host, port, user, password, use_tls)
        async with self.lock:
            self.pool[key] = (smtp, time.time(), password)
        return smtp

    async def discard(self, host: str, port: int, user: Optional[str], *, use_tls: bool) -> None:
        """Drop the pooled connection after a failed send."""
        async with self.lock:
            entry = self.pool.pop((host, port, user, use_tls), None)
        if entry:
            await self._close(entry[0])

    async def close_all(self) -> None:
        """Close every pooled connection."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _last_used, _password in entries:
            await self._close(smtp)
