"""
Notification outbox dispatch. Email (SMTP) is the only channel.

Rendering of the real templates happens in the mail service; the outbox
payload carries the recipient, a plain-text subject/body and the template
data so the receiving side can re-render.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    use_tls: bool
    from_email: str


def build_email_payload(
    *,
    to_email: str,
    subject: str,
    body_text: str,
    template: str,
    data: dict[str, Any],
) -> dict[str, Any]:
    return {
        "to": to_email,
        "subject": subject,
        "body_text": body_text,
        "template": {"name": template, "data": data},
        "extra_headers": {"X-Template": template},
    }


def _compose_message(
    smtp: SmtpConfig,
    *,
    to_email: str,
    subject: str,
    body_text: str,
    headers: dict[str, str],
) -> EmailMessage:
    message = EmailMessage()
    message["From"] = smtp.from_email
    message["To"] = to_email
    message["Subject"] = subject
    for name, value in headers.items():
        message[name] = value
    message.set_content(body_text)
    return message


def _connect(smtp: SmtpConfig) -> smtplib.SMTP:
    context = ssl.create_default_context()
    # 465 is implicit TLS; anything else starts plain and upgrades when use_tls is set.
    if smtp.port == 465:
        return smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=20, context=context)
    connection = smtplib.SMTP(smtp.host, smtp.port, timeout=20)
    if smtp.use_tls:
        connection.starttls(context=context)
    return connection


def send_email_via_smtp(smtp: SmtpConfig, message: EmailMessage) -> None:
    connection = _connect(smtp)
    try:
        if smtp.user and smtp.password:
            connection.login(smtp.user, smtp.password)
        connection.send_message(message)
    finally:
        try:
            connection.quit()
        except smtplib.SMTPException:
            logger.debug("SMTP quit failed for %s", smtp.host)


def outbox_channel_send(
    *,
    channel: str,
    payload: dict[str, Any],
    smtp: Optional[SmtpConfig] = None,
) -> None:
    if channel == "email":
        if smtp is None:
            raise RuntimeError("SMTP_NOT_CONFIGURED")

        to_email = str(payload.get("to") or "").strip()
        subject = str(payload.get("subject") or "").strip()
        body_text = str(payload.get("body_text") or "")
        if not to_email or not subject:
            raise RuntimeError("EMAIL_MISSING_FIELDS")

        message = _compose_message(
            smtp,
            to_email=to_email,
            subject=subject,
            body_text=body_text,
            headers=dict(payload.get("extra_headers") or {}),
        )
        send_email_via_smtp(smtp, message)
        logger.info("Email sent: to=%s subject=%s", to_email, subject)
        return

    raise RuntimeError(f"UNKNOWN_CHANNEL:{channel}")
