import asyncio
import logging
import re

import pytest
from prometheus_client import REGISTRY

from applymail import mailer as mailer_mod
from applymail.compose import ApplicationEmailRequest, MailMessage
from applymail.ethereal import EtherealError
from applymail.mailer import Mailer

from conftest import ETHEREAL_RESPONSE, SMTP_ENV, AccountFactory, TransportFactory


def _mailer(env, transports, accounts=None):
    return Mailer(environ=env, transport_factory=transports, account_factory=accounts or AccountFactory())


def _request(**overrides):
    fields = dict(
        applicant_email="jane@example.com",
        applicant_name="Jane",
        hr_email="hr@example.com",
        position="Engineer application",
        form_data={"id": "ABC1234", "Name": "Jane", "Role": "Engineer"},
    )
    fields.update(overrides)
    return ApplicationEmailRequest(**fields)


def _sent_total(mode, outcome):
    return REGISTRY.get_sample_value("applymail_mails_sent_total", {"mode": mode, "outcome": outcome}) or 0.0


# ---------- transporter resolution ----------
async def test_no_config_falls_back_to_ethereal(transport_factory, account_factory):
    m = _mailer({}, transport_factory, account_factory)
    transporter = await m.get_transporter()

    assert m.using_ethereal
    assert account_factory.calls == 1
    opts = transporter.options
    assert (opts.host, opts.port, opts.user, opts.pool) == ("smtp.ethereal.email", 587, "kaci.fake@ethereal.email", False)
    assert transporter.verify_calls == 1


async def test_real_smtp_pooled_transport(transport_factory, account_factory):
    m = _mailer(SMTP_ENV, transport_factory, account_factory)
    opts = (await m.get_transporter()).options

    assert not m.using_ethereal
    assert account_factory.calls == 0
    assert (opts.host, opts.port, opts.secure) == ("smtp.example.com", 587, False)
    assert opts.pool is True
    assert opts.max_connections == 5


async def test_port_465_transport_is_secure(transport_factory):
    m = _mailer({**SMTP_ENV, "SMTP_PORT": "465"}, transport_factory)
    opts = (await m.get_transporter()).options
    assert (opts.port, opts.secure) == (465, True)


async def test_transporter_is_cached(transport_factory):
    m = _mailer(SMTP_ENV, transport_factory)
    first = await m.get_transporter()
    assert await m.get_transporter() is first
    assert len(transport_factory.created) == 1


async def test_concurrent_first_calls_create_once(transport_factory, account_factory):
    m = _mailer({}, transport_factory, account_factory)
    a, b = await asyncio.gather(m.get_transporter(), m.get_transporter())
    assert a is b
    assert account_factory.calls == 1
    assert len(transport_factory.created) == 1


async def test_verify_failure_is_not_fatal(caplog):
    transports = TransportFactory(verify_error=ConnectionRefusedError("no route"))
    m = _mailer(SMTP_ENV, transports)
    with caplog.at_level(logging.WARNING, logger="applymail.mailer"):
        transporter = await m.get_transporter()
    assert transporter is transports.last
    assert "Mailer verify failed: no route" in caplog.text

    result = await m.send_mail(to="hr@example.com", subject="still works", html="<p>ok</p>")
    assert result.accepted == ["hr@example.com"]


async def test_sandbox_account_failure_propagates_and_retries(transport_factory):
    accounts = AccountFactory(errors=[EtherealError("api down")])
    m = _mailer({}, transport_factory, accounts)

    with pytest.raises(EtherealError, match="api down"):
        await m.get_transporter()
    assert transport_factory.created == []

    await m.get_transporter()
    assert accounts.calls == 2
    assert len(transport_factory.created) == 1


# ---------- send_mail ----------
async def test_send_mail_from_header_and_log(transport_factory, caplog):
    m = _mailer({**SMTP_ENV, "FROM_NAME": "Acme HR"}, transport_factory)
    with caplog.at_level(logging.INFO, logger="applymail.mailer"):
        result = await m.send_mail(to="hr@example.com", subject="Ping", text="hello", cc="lead@example.com")

    sent = transport_factory.last.sent[0]
    assert sent.from_addr == "Acme HR <hr-bot@example.com>"
    assert sent.cc == "lead@example.com"
    assert result.preview_url is None
    assert "Sent mail -> to: hr@example.com subject: Ping" in caplog.text


async def test_send_mail_ethereal_attaches_preview_url(account_factory):
    transports = TransportFactory(response=ETHEREAL_RESPONSE)
    m = _mailer({}, transports, account_factory)
    result = await m.send_mail(to="hr@example.com", subject="Ping", html="<p>x</p>")
    assert result.preview_url == "https://ethereal.email/message/Y2FmZWJhYmUtZmFrZQ"


async def test_send_mail_error_propagates_unchanged():
    transports = TransportFactory(fail_for={"hr@example.com"})
    m = _mailer(SMTP_ENV, transports)
    before = _sent_total("smtp", "error")

    with pytest.raises(ConnectionError, match="relay refused hr@example.com"):
        await m.send_mail(to="hr@example.com", subject="x", text="x")
    assert _sent_total("smtp", "error") == before + 1


async def test_send_message_leaves_callers_message_untouched(transport_factory):
    m = _mailer(SMTP_ENV, transport_factory)
    message = MailMessage(to="hr@example.com", subject="Ping", text="hello")
    await m.send_message(message)

    assert message.from_addr is None
    assert transport_factory.last.sent[0].from_addr == "Techlynx Innovations <hr-bot@example.com>"


# ---------- send_application_emails ----------
async def test_application_emails_both_fulfilled(transport_factory):
    m = _mailer(SMTP_ENV, transport_factory)
    hr, applicant = await m.send_application_emails(_request())

    assert hr.ok and applicant.ok
    sent = transport_factory.last.sent
    assert [s.to for s in sent] == ["hr@example.com", "jane@example.com"]
    assert all("ABC1234" in s.html for s in sent)
    assert sent[0].subject == "New Engineer application — Jane"
    assert sent[1].subject == "We received your Engineer application — Techlynx Innovations"


@pytest.mark.parametrize("failing, expected", [
    ("hr@example.com", ("rejected", "fulfilled")),
    ("jane@example.com", ("fulfilled", "rejected")),
])
async def test_application_emails_isolate_failures(failing, expected):
    transports = TransportFactory(fail_for={failing})
    m = _mailer(SMTP_ENV, transports)
    outcomes = await m.send_application_emails(_request())

    assert len(outcomes) == 2
    assert tuple(o.status for o in outcomes) == expected
    assert len(transports.last.sent) == 2
    rejected = next(o for o in outcomes if not o.ok)
    assert isinstance(rejected.reason, ConnectionError)
    assert rejected.value is None
    fulfilled = next(o for o in outcomes if o.ok)
    assert fulfilled.value.accepted


async def test_application_emails_shared_generated_reference(transport_factory):
    m = _mailer(SMTP_ENV, transport_factory)
    await m.send_application_emails(_request(form_data={"Name": "Jane"}))

    hr, applicant = transport_factory.last.sent
    ref = re.search(r"<strong>Reference ID:</strong> ([A-Z0-9]{7})<br/>", hr.html).group(1)
    assert f"<strong>{ref}</strong>" in applicant.html


async def test_application_emails_attach_existing_resume(transport_factory, tmp_path):
    resume = tmp_path / "jane_cv.pdf"
    resume.write_bytes(b"%PDF-1.4 fake")
    m = _mailer(SMTP_ENV, transport_factory)
    await m.send_application_emails(_request(resume_path=str(resume)))

    hr, applicant = transport_factory.last.sent
    assert [a.filename for a in hr.attachments] == ["jane_cv.pdf"]
    assert applicant.attachments == []


async def test_application_emails_missing_resume_sends_without_attachment(transport_factory, tmp_path):
    m = _mailer(SMTP_ENV, transport_factory)
    outcomes = await m.send_application_emails(_request(resume_path=str(tmp_path / "gone.pdf")))

    assert all(o.ok for o in outcomes)
    assert transport_factory.last.sent[0].attachments == []


async def test_application_emails_preparation_error_is_raised(transport_factory, caplog):
    m = _mailer(SMTP_ENV, transport_factory)
    with caplog.at_level(logging.ERROR, logger="applymail.mailer"):
        with pytest.raises(AttributeError):
            await m.send_application_emails(_request(position=None))
    assert "Error in send_application_emails" in caplog.text
    assert transport_factory.created == []


async def test_module_level_helpers_use_default_mailer(monkeypatch, transport_factory):
    monkeypatch.setattr(mailer_mod, "default_mailer", _mailer(SMTP_ENV, transport_factory))

    outcomes = await mailer_mod.send_application_emails(
        applicant_email="sam@example.com",
        applicant_name="Sam",
        hr_email="hr@example.com",
    )
    assert [o.status for o in outcomes] == ["fulfilled", "fulfilled"]
    assert transport_factory.last.sent[0].subject == "New Submission — Sam"

    result = await mailer_mod.send_mail(to="sam@example.com", subject="Follow-up", text="hi")
    assert result.accepted == ["sam@example.com"]
    assert await mailer_mod.get_transporter() is transport_factory.last
