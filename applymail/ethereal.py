# applymail/ethereal.py
from __future__ import annotations
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

import requests

from .config import MailerError, settings

if TYPE_CHECKING:
    from .transport import SendResult

logger = logging.getLogger(__name__)

REQUESTOR = "applymail"
REQUESTOR_VERSION = "1.0.0"

_STATUS_BLOCK = re.compile(r"\[([^\]]+)\]\s*$")
_STATUS_PROP = re.compile(r"\b([A-Z0-9]+)=(\S+)")


class EtherealError(MailerError):
    pass


@dataclass(frozen=True)
class ServerInfo:
    host: str
    port: int
    secure: bool


@dataclass(frozen=True)
class EtherealAccount:
    user: str
    password: str
    smtp: ServerInfo
    imap: Optional[ServerInfo] = None
    pop3: Optional[ServerInfo] = None
    web: str = "https://ethereal.email"

    def __repr__(self) -> str:
        return f"EtherealAccount(user={self.user!r}, smtp={self.smtp!r}, web={self.web!r})"


def _server(data: dict | None) -> Optional[ServerInfo]:
    if not data:
        return None
    return ServerInfo(host=data["host"], port=int(data["port"]), secure=bool(data.get("secure")))


def create_test_account(api_url: str | None = None, timeout: float | None = None) -> EtherealAccount:
    """
    Ask the Ethereal API for a throwaway mailbox.
    Every call creates a brand new account; nothing is cached here.
    """
    url = f"{(api_url or settings.ethereal_api_url).rstrip('/')}/user"
    payload = {"requestor": REQUESTOR, "version": REQUESTOR_VERSION}
    try:
        resp = requests.post(url, json=payload, timeout=timeout or settings.ethereal_timeout)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise EtherealError(f"Failed to create Ethereal account: {e}") from e

    if data.get("status") != "success":
        raise EtherealError(data.get("error") or "Failed to create Ethereal account")

    try:
        account = EtherealAccount(
            user=data["user"],
            password=data["pass"],
            smtp=_server(data["smtp"]),
            imap=_server(data.get("imap")),
            pop3=_server(data.get("pop3")),
            web=data.get("web") or settings.ethereal_web_url,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise EtherealError(f"Malformed Ethereal account response: {e}") from e

    logger.info("[ethereal] created test account %s", account.user)
    return account


async def acquire_test_account() -> EtherealAccount:
    return await asyncio.to_thread(create_test_account)


def get_test_message_url(result: "SendResult", web: str | None = None) -> Optional[str]:
    """
    Ethereal answers DATA with e.g. "Accepted [STATUS=new MSGID=abc...]".
    The MSGID is what the web UI uses to show the message.
    """
    response = getattr(result, "response", None)
    if not response:
        return None
    m = _STATUS_BLOCK.search(response)
    if not m:
        return None
    props = dict(_STATUS_PROP.findall(m.group(1)))
    if "STATUS" in props and "MSGID" in props:
        return f"{(web or settings.ethereal_web_url).rstrip('/')}/message/{props['MSGID']}"
    return None
