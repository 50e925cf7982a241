import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Dict, Optional

from .config import settings
from .logging_utils import log_event, log_warning


class EmailNotSent(Exception):
    """Raised for email failures that a retry cannot fix."""

    def __init__(self, code: str, message: str | None = None):
        super().__init__(message or code)
        self.code = code


def build_message(to_email: str, subject: str, body_text: str, body_html: Optional[str] = None) -> EmailMessage:
    message = EmailMessage()
    message["From"] = formataddr((settings.smtp_sender_name, settings.smtp_sender or ""))
    message["To"] = to_email
    message["Subject"] = subject
    message.set_content(body_text)
    if body_html:
        message.add_alternative(body_html, subtype="html")
    return message


def send_email_now(
    to_email: str,
    subject: str,
    body_text: str,
    body_html: Optional[str] = None,
    context: Dict[str, Any] | None = None,
) -> None:
    """Send one email over SMTP in a single attempt.

    Raises ``EmailNotSent`` when email is switched off or SMTP is not configured,
    and lets SMTP/socket errors propagate so the caller can retry them.
    """
    context = context or {}
    if not settings.email_enabled:
        log_warning("email_disabled", to=to_email, subject=subject, **context)
        raise EmailNotSent("email_disabled")
    if not settings.smtp_host or not settings.smtp_sender:
        log_warning("email_smtp_not_configured", to=to_email, subject=subject, **context)
        raise EmailNotSent("email_not_configured")

    message = build_message(to_email, subject, body_text, body_html)
    with smtplib.SMTP(
        settings.smtp_host,
        settings.smtp_port or 25,
        timeout=settings.smtp_timeout_seconds,
    ) as server:
        if settings.smtp_use_tls:
            server.starttls()
        if settings.smtp_username:
            server.login(settings.smtp_username, settings.smtp_password or "")
        server.send_message(message)
    log_event("email_sent", to=to_email, subject=subject, **context)
