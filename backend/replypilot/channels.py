from __future__ import annotations

import smtplib
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from . import email_service
from .config import settings
from .logging_utils import log_warning
from .notification_templates import RenderedContent


@dataclass(frozen=True)
class Recipient:
    customer_id: int
    user_id: Optional[int]
    address: str


@dataclass
class ChannelResult:
    success: bool
    error: Optional[str] = None
    retryable: bool = False
    provider_message_id: Optional[str] = None
    attempts: int = 0


Sleep = Callable[[float], None]


def deliver_with_retries(
    attempt: Callable[[], ChannelResult],
    *,
    max_attempts: int | None = None,
    sleep: Sleep | None = None,
    context: dict[str, Any] | None = None,
) -> ChannelResult:
    """Run ``attempt`` until it succeeds, fails permanently or runs out of attempts.

    Backoff between attempts is ``base * factor ** (n - 1)`` seconds.
    """
    max_attempts = max(1, max_attempts or settings.delivery_max_attempts)
    sleep = sleep or time.sleep
    result = ChannelResult(success=False, error="not_attempted")
    for number in range(1, max_attempts + 1):
        result = attempt()
        result.attempts = number
        if result.success or not result.retryable:
            return result
        if number < max_attempts:
            delay = settings.delivery_retry_base_seconds * (settings.delivery_retry_factor ** (number - 1))
            log_warning(
                "delivery_attempt_failed",
                attempt=number,
                max_attempts=max_attempts,
                retry_in_seconds=delay,
                error=result.error,
                **(context or {}),
            )
            if delay > 0:
                sleep(delay)
    return result


class EmailChannel:
    name = "email"

    def __init__(self, *, sleep: Sleep | None = None):
        self._sleep = sleep

    def _attempt(self, recipient: Recipient, content: RenderedContent) -> ChannelResult:
        try:
            email_service.send_email_now(
                recipient.address,
                content.subject,
                content.body_text,
                content.body_html,
                context={"customer_id": recipient.customer_id, "user_id": recipient.user_id},
            )
        except email_service.EmailNotSent as exc:
            return ChannelResult(success=False, error=exc.code, retryable=False)
        except smtplib.SMTPRecipientsRefused as exc:
            return ChannelResult(success=False, error=f"recipient_refused: {exc}", retryable=False)
        except (smtplib.SMTPException, OSError) as exc:
            return ChannelResult(success=False, error=f"{exc.__class__.__name__}: {exc}", retryable=True)
        return ChannelResult(success=True)

    def send(self, recipient: Recipient, content: RenderedContent, *, db: Session | None = None) -> ChannelResult:
        try:
            return deliver_with_retries(
                lambda: self._attempt(recipient, content),
                sleep=self._sleep,
                context={"channel": self.name, "customer_id": recipient.customer_id},
            )
        except Exception as exc:  # noqa: BLE001
            log_warning("email_channel_error", customer_id=recipient.customer_id, error=str(exc))
            return ChannelResult(success=False, error=str(exc), retryable=False, attempts=1)


class SmsChannel:
    name = "sms"

    def __init__(self, *, sleep: Sleep | None = None):
        self._sleep = sleep

    def _attempt(self, db: Session | None, recipient: Recipient, content: RenderedContent) -> ChannelResult:
        from .sms_gateway import send_sms  # noqa: PLC0415

        return send_sms(db, customer_id=recipient.customer_id, to=recipient.address, body=content.body_text)

    def send(self, recipient: Recipient, content: RenderedContent, *, db: Session | None = None) -> ChannelResult:
        try:
            return deliver_with_retries(
                lambda: self._attempt(db, recipient, content),
                sleep=self._sleep,
                context={"channel": self.name, "customer_id": recipient.customer_id},
            )
        except Exception as exc:  # noqa: BLE001
            log_warning("sms_channel_error", customer_id=recipient.customer_id, error=str(exc))
            return ChannelResult(success=False, error=str(exc), retryable=False, attempts=1)


_DEFAULT_CHANNELS = {"email": EmailChannel, "sms": SmsChannel}
_channels: dict[str, Any] = {}


def get_channel(name: str):
    if name not in _channels:
        factory = _DEFAULT_CHANNELS.get(name)
        if factory is None:
            raise ValueError(f"Unknown channel: {name}")
        _channels[name] = factory()
    return _channels[name]


def set_channel(name: str, channel) -> None:
    _channels[name] = channel


def reset_channels() -> None:
    _channels.clear()
