# applymail/compose.py
from __future__ import annotations
import html
import mimetypes
import os
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from email.utils import formatdate, make_msgid, parseaddr
from typing import Any, List, Mapping, Optional, Sequence, Union

Recipients = Union[str, Sequence[str]]

_REF_ALPHABET = string.ascii_uppercase + string.digits
_REF_LENGTH = 7

_CELL = "padding:6px;border:1px solid #eee;"


@dataclass(frozen=True)
class AttachmentRef:
    filename: str
    path: str


@dataclass
class MailMessage:
    to: Recipients
    subject: str
    text: Optional[str] = None
    html: Optional[str] = None
    cc: Optional[Recipients] = None
    bcc: Optional[Recipients] = None
    attachments: List[AttachmentRef] = field(default_factory=list)
    from_addr: Optional[str] = None


@dataclass
class ApplicationEmailRequest:
    applicant_email: str
    applicant_name: str
    hr_email: str
    position: str = "Submission"
    form_data: Optional[Mapping[str, Any]] = field(default_factory=dict)
    resume_path: Optional[str] = None
    application_url: str = ""


def join_recipients(value: Recipients | None) -> str:
    if not value:
        return ""
    if isinstance(value, str):
        return value
    return ", ".join(v for v in value if v)


def render_form_table(form_data: Mapping[str, Any] | None) -> str:
    """
    One <tr> per form field, values stringified (None -> "").
    Keys and values are HTML-escaped.
    """
    if not form_data or not isinstance(form_data, Mapping):
        return ""
    rows = "".join(
        f'<tr><td style="{_CELL}"><strong>{html.escape(str(k))}</strong></td>'
        f'<td style="{_CELL}">{html.escape("" if v is None else str(v))}</td></tr>'
        for k, v in form_data.items()
    )
    return f'<table style="border-collapse:collapse;">{rows}</table>'


def resolve_reference_id(form_data: Mapping[str, Any] | None) -> str:
    ref = form_data.get("id") if isinstance(form_data, Mapping) else None
    if ref:
        return str(ref)
    # not unique, just short enough to quote over the phone
    return "".join(secrets.choice(_REF_ALPHABET) for _ in range(_REF_LENGTH))


def format_submitted_at(when: datetime | None = None) -> str:
    when = when or datetime.now()
    return when.strftime("%m/%d/%Y, %I:%M:%S %p")


def resume_attachments(resume_path: str | None) -> List[AttachmentRef]:
    if resume_path and os.path.isfile(resume_path):
        return [AttachmentRef(filename=os.path.basename(resume_path), path=resume_path)]
    return []


def build_hr_message(req: ApplicationEmailRequest, *, reference_id: str, submitted_at: str) -> MailMessage:
    position = html.escape(req.position)
    body = f"""
      <h3>New {position}</h3>
      <p><strong>Applicant:</strong> {html.escape(req.applicant_name or "")} &lt;{html.escape(req.applicant_email or "")}&gt;</p>
      <p><strong>Reference ID:</strong> {html.escape(reference_id)}<br/><strong>Submitted:</strong> {html.escape(submitted_at)}</p>
      {render_form_table(req.form_data)}
    """
    if req.application_url:
        body += f'  <p><a href="{html.escape(req.application_url, quote=True)}" target="_blank">Open in admin</a></p>\n'

    return MailMessage(
        to=req.hr_email,
        subject=f"New {req.position} — {req.applicant_name}",
        html=body,
        attachments=resume_attachments(req.resume_path),
    )


def build_applicant_message(
    req: ApplicationEmailRequest, *, reference_id: str, submitted_at: str, signature: str
) -> MailMessage:
    body = f"""
      <p>Hi {html.escape(req.applicant_name or "Applicant")},</p>
      <p>Thanks for your {html.escape(req.position)} submission. We received your details (Ref: <strong>{html.escape(reference_id)}</strong>) on {html.escape(submitted_at)}.</p>
      <p>Summary of your submission:</p>
      {render_form_table(req.form_data)}
      <p>— {html.escape(signature)}</p>
    """
    return MailMessage(
        to=req.applicant_email,
        subject=f"We received your {req.position} — {signature}",
        html=body,
    )


def to_email_message(msg: MailMessage) -> EmailMessage:
    """
    Render a MailMessage into a stdlib EmailMessage ready for SMTP.
    Attachments are read from disk here; a missing file raises FileNotFoundError.
    """
    em = EmailMessage()
    if msg.from_addr:
        em["From"] = msg.from_addr
    em["To"] = join_recipients(msg.to)
    if msg.cc:
        em["Cc"] = join_recipients(msg.cc)
    if msg.bcc:
        em["Bcc"] = join_recipients(msg.bcc)
    em["Subject"] = msg.subject
    em["Date"] = formatdate(localtime=True)
    domain = parseaddr(msg.from_addr or "")[1].rpartition("@")[2] or None
    em["Message-ID"] = make_msgid(domain=domain)

    if msg.text is not None and msg.html is not None:
        em.set_content(msg.text)
        em.add_alternative(msg.html, subtype="html")
    elif msg.html is not None:
        em.set_content(msg.html, subtype="html")
    else:
        em.set_content(msg.text or "")

    for att in msg.attachments:
        content_type, encoding = mimetypes.guess_type(att.filename)
        if content_type is None or encoding is not None:
            content_type = "application/octet-stream"
        maintype, subtype = content_type.split("/", 1)
        with open(att.path, "rb") as fp:
            em.add_attachment(fp.read(), maintype=maintype, subtype=subtype, filename=att.filename)
    return em
