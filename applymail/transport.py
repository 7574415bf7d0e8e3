# applymail/transport.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from email.utils import getaddresses, parseaddr
from typing import Dict, List, Optional, Protocol

import aiosmtplib

from .compose import MailMessage, join_recipients, to_email_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportOptions:
    host: str
    port: int
    secure: bool = False
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    pool: bool = False
    max_connections: int = 5
    timeout: float = 60.0


@dataclass
class SendResult:
    message_id: str
    envelope: Dict[str, object]
    accepted: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    response: str = ""
    preview_url: Optional[str] = None


class Transporter(Protocol):
    async def verify(self) -> bool: ...

    async def send_mail(self, message: MailMessage) -> SendResult: ...


def _envelope_recipients(message: MailMessage) -> List[str]:
    fields = [join_recipients(v) for v in (message.to, message.cc, message.bcc) if v]
    return [addr for _, addr in getaddresses(fields) if addr]


class SMTPTransport:
    """
    SMTP over aiosmtplib.
    pool=True keeps authenticated connections around and never opens more
    than max_connections at once; otherwise every send gets its own connection.
    """
    def __init__(self, options: TransportOptions) -> None:
        self.options = options
        self._idle: List[aiosmtplib.SMTP] = []
        self._slots: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _pool_for_running_loop(self) -> asyncio.Semaphore:
        # idle connections and the semaphore belong to the loop that made them;
        # a new asyncio.run() starts over with a fresh pool
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            if self._idle:
                logger.debug("[smtp] event loop changed, dropping %d idle connection(s)", len(self._idle))
            self._idle = []
            self._slots = asyncio.Semaphore(max(1, self.options.max_connections))
            self._loop = loop
        return self._slots

    def _client(self) -> aiosmtplib.SMTP:
        o = self.options
        return aiosmtplib.SMTP(
            hostname=o.host,
            port=o.port,
            username=o.user,
            password=o.password,
            use_tls=o.secure,
            timeout=o.timeout,
        )

    async def verify(self) -> bool:
        client = self._client()
        await client.connect()
        try:
            await client.noop()
        finally:
            await client.quit()
        return True

    async def _checkout(self) -> aiosmtplib.SMTP:
        while self._idle:
            client = self._idle.pop()
            if client.is_connected:
                return client
        client = self._client()
        await client.connect()
        return client

    async def _send(self, email, sender: str, recipients: List[str]):
        if not self.options.pool:
            async with self._client() as client:
                return await client.send_message(email, sender=sender, recipients=recipients)

        async with self._pool_for_running_loop():
            client = await self._checkout()
            try:
                result = await client.send_message(email, sender=sender, recipients=recipients)
            except BaseException:
                # never hand a broken connection back to the pool
                client.close()
                logger.debug("[smtp] dropped pooled connection to %s after send failure", self.options.host)
                raise
            self._idle.append(client)
            return result

    async def send_mail(self, message: MailMessage) -> SendResult:
        email = to_email_message(message)
        sender = parseaddr(message.from_addr or "")[1] or (self.options.user or "")
        recipients = _envelope_recipients(message)

        errors, response = await self._send(email, sender, recipients)

        rejected = [addr for addr in recipients if addr in errors]
        return SendResult(
            message_id=email["Message-ID"],
            envelope={"from": sender, "to": recipients},
            accepted=[addr for addr in recipients if addr not in errors],
            rejected=rejected,
            response=response,
        )


def create_transport(options: TransportOptions) -> SMTPTransport:
    return SMTPTransport(options)
