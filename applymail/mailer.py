# applymail/mailer.py
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence

from .compose import (
    ApplicationEmailRequest,
    AttachmentRef,
    MailMessage,
    Recipients,
    build_applicant_message,
    build_hr_message,
    format_submitted_at,
    join_recipients,
    resolve_reference_id,
)
from .config import MailerConfig, from_header, sender_name, settings
from .ethereal import EtherealAccount, acquire_test_account, get_test_message_url
from .metrics import MAILS_SENT_TOTAL, SEND_LATENCY_SECONDS, TRANSPORT_VERIFY_TOTAL
from .transport import SendResult, Transporter, TransportOptions, create_transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendOutcome:
    status: str    # "fulfilled" | "rejected"
    value: Optional[SendResult] = None
    reason: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"

    @classmethod
    def settle(cls, result: Any) -> "SendOutcome":
        if isinstance(result, BaseException):
            return cls(status="rejected", reason=result)
        return cls(status="fulfilled", value=result)


class Mailer:
    """
    Owns the process transporter. It is created on first use, verified once,
    and cached; a failed creation caches nothing so the next call retries.
    """
    def __init__(
        self,
        *,
        environ: Mapping[str, str] | None = None,
        transport_factory: Callable[[TransportOptions], Transporter] = create_transport,
        account_factory: Callable[[], Awaitable[EtherealAccount]] = acquire_test_account,
    ) -> None:
        self._environ = environ
        self._transport_factory = transport_factory
        self._account_factory = account_factory
        self._transporter: Optional[Transporter] = None
        self._account: Optional[EtherealAccount] = None
        self._lock = asyncio.Lock()

    @property
    def using_ethereal(self) -> bool:
        return self._account is not None

    @property
    def mode(self) -> str:
        return "ethereal" if self.using_ethereal else "smtp"

    async def get_transporter(self) -> Transporter:
        if self._transporter is not None:
            return self._transporter
        async with self._lock:
            if self._transporter is None:
                self._transporter, self._account = await self._create_transporter()
        return self._transporter

    async def _create_transporter(self):
        cfg = MailerConfig.from_env(self._environ)
        account = None

        if cfg.use_sandbox:
            logger.info(
                "[mailer] Using Ethereal (dev) mail account; set USE_ETHEREAL=0 and MAIL_* (or SMTP_*) vars for real SMTP"
            )
            account = await self._account_factory()
            options = TransportOptions(
                host=account.smtp.host,
                port=account.smtp.port,
                secure=account.smtp.secure,
                user=account.user,
                password=account.password,
                timeout=settings.smtp_timeout,
            )
        else:
            options = TransportOptions(
                host=cfg.host,
                port=cfg.resolved_port,
                secure=cfg.resolved_secure,
                user=cfg.user,
                password=cfg.password,
                pool=True,
                max_connections=settings.smtp_max_connections,
                timeout=settings.smtp_timeout,
            )

        transporter = self._transport_factory(options)
        mode = "ethereal" if account else "smtp"
        try:
            await transporter.verify()
            TRANSPORT_VERIFY_TOTAL.labels(mode=mode, outcome="ok").inc()
            logger.info(
                "[mailer] Mailer ready (%s). Host=%s", mode, cfg.host if not account else "ethereal",
                extra={"mail_mode": mode},
            )
        except Exception as err:
            TRANSPORT_VERIFY_TOTAL.labels(mode=mode, outcome="error").inc()
            logger.warning("[mailer] Mailer verify failed: %s", err, extra={"mail_mode": mode})
        return transporter, account

    async def send_mail(
        self,
        *,
        to: Recipients,
        subject: str,
        text: str | None = None,
        html: str | None = None,
        cc: Recipients | None = None,
        bcc: Recipients | None = None,
        attachments: Sequence[AttachmentRef] = (),
    ) -> SendResult:
        return await self.send_message(
            MailMessage(
                to=to, subject=subject, text=text, html=html,
                cc=cc, bcc=bcc, attachments=list(attachments),
            )
        )

    async def send_message(self, message: MailMessage) -> SendResult:
        transporter = await self.get_transporter()
        message = replace(message, from_addr=from_header(self._environ))
        mode = self.mode
        context = {"mail_mode": mode, "recipient": join_recipients(message.to)}

        start = time.perf_counter()
        try:
            info = await transporter.send_mail(message)
        except Exception:
            MAILS_SENT_TOTAL.labels(mode=mode, outcome="error").inc()
            raise
        finally:
            SEND_LATENCY_SECONDS.labels(mode=mode).observe(time.perf_counter() - start)
        MAILS_SENT_TOTAL.labels(mode=mode, outcome="ok").inc()

        if self._account is not None:
            info.preview_url = get_test_message_url(info, web=self._account.web)
            logger.info("[mailer] Email preview URL: %s", info.preview_url, extra=context)
        logger.info("[mailer] Sent mail -> to: %s subject: %s", message.to, message.subject, extra=context)
        return info

    async def send_application_emails(self, request: ApplicationEmailRequest) -> List[SendOutcome]:
        """
        Send the HR notification and the applicant confirmation side by side.
        Always returns [hr, applicant]; a failed send shows up as a rejected
        outcome and never cancels the other one.
        """
        try:
            submitted_at = format_submitted_at()
            reference_id = resolve_reference_id(request.form_data)
            hr = build_hr_message(request, reference_id=reference_id, submitted_at=submitted_at)
            applicant = build_applicant_message(
                request,
                reference_id=reference_id,
                submitted_at=submitted_at,
                signature=sender_name(self._environ),
            )
        except Exception:
            logger.exception("[mailer] Error in send_application_emails")
            raise

        results = await asyncio.gather(
            self.send_message(hr),
            self.send_message(applicant),
            return_exceptions=True,
        )
        outcomes = [SendOutcome.settle(r) for r in results]
        for label, outcome in zip(("hr", "applicant"), outcomes):
            if not outcome.ok:
                logger.warning(
                    "[mailer] %s email failed (ref %s): %s", label, reference_id, outcome.reason,
                    extra={"reference_id": reference_id},
                )
        return outcomes


# ---------- Process-wide default ----------
default_mailer = Mailer()


async def get_transporter() -> Transporter:
    return await default_mailer.get_transporter()


async def send_mail(**message: Any) -> SendResult:
    return await default_mailer.send_mail(**message)


async def send_application_emails(request: ApplicationEmailRequest | None = None, **fields: Any) -> List[SendOutcome]:
    if request is None:
        request = ApplicationEmailRequest(**fields)
    return await default_mailer.send_application_emails(request)


if __name__ == "__main__":
    from .logging_setup import setup_logging

    log = setup_logging(app="applymail", stream_json=False)

    async def _demo() -> None:
        outcomes = await send_application_emails(
            applicant_email="jane@example.com",
            applicant_name="Jane Doe",
            hr_email="hr@example.com",
            position="Software Engineer application",
            form_data={"Name": "Jane Doe", "Role": "Engineer"},
        )
        for outcome in outcomes:
            if outcome.ok:
                log.info("sent %s preview=%s", outcome.value.message_id, outcome.value.preview_url)
            else:
                log.error("failed: %s", outcome.reason)

    asyncio.run(_demo())
