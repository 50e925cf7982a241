from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .cadence import InvalidCadence, as_utc, is_quiet_hours, local_day_bounds, utc_now
from .channels import Recipient, get_channel
from .config import settings
from .digest import append_event
from .logging_utils import log_event, log_warning
from .notification_templates import render
from .preferences import load_preference_rows
from .task_queue import JOB_TYPE_DISPATCH_NOTIFICATION, enqueue_job

EVENT_TYPES = (
    "new_lead",
    "new_message",
    "lead_managed",
    "lead_converted",
    "ai_failed",
    "digest",
    "weekly_report",
)
# Already aggregated content; never batched again.
AGGREGATE_EVENT_TYPES = {"digest", "weekly_report"}
CHANNELS = (models.Channel.email.value, models.Channel.sms.value)

_GATES = {
    "new_lead": ("email_new_lead", "sms_new_lead"),
    "new_message": ("email_new_message", "sms_new_message"),
    "lead_managed": ("notify_lead_managed", "notify_lead_managed"),
    "lead_converted": ("notify_lead_converted", "notify_lead_converted"),
    "ai_failed": ("notify_ai_failed", "notify_ai_failed"),
}


class UnknownEventType(ValueError):
    pass


@dataclass
class DispatchOutcome:
    outcome: str
    channel: Optional[str] = None
    user_id: Optional[int] = None
    error: Optional[str] = None
    delivery_id: Optional[int] = None
    bucket_id: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_subscribed(pref: models.NotificationPreference, channel: str, event_type: str) -> bool:
    if channel == models.Channel.email.value and not pref.email_enabled:
        return False
    if channel == models.Channel.sms.value and not pref.sms_enabled:
        return False
    if event_type in AGGREGATE_EVENT_TYPES:
        return channel == models.Channel.email.value
    email_gate, sms_gate = _GATES[event_type]
    return bool(getattr(pref, email_gate if channel == models.Channel.email.value else sms_gate))


def recipient_address(db: Session, pref: models.NotificationPreference, channel: str) -> str | None:
    if channel == models.Channel.sms.value:
        return (pref.sms_phone or "").strip() or None
    if pref.email:
        return pref.email
    if pref.user_id is not None:
        user = db.get(models.User, pref.user_id)
        if user and user.email:
            return user.email
    customer = db.get(models.Customer, pref.customer_id)
    return customer.email if customer and customer.email else None


def count_sent_today(
    db: Session,
    customer_id: int,
    user_id: Optional[int],
    channel: str,
    *,
    now: datetime,
    tz: Optional[str] = None,
) -> int:
    day_start, day_end = local_day_bounds(now, tz)
    query = db.query(func.count(models.NotificationDelivery.id)).filter(
        models.NotificationDelivery.customer_id == customer_id,
        models.NotificationDelivery.channel == channel,
        models.NotificationDelivery.notification_type.in_(EVENT_TYPES),
        models.NotificationDelivery.status == models.DeliveryStatus.sent.value,
        models.NotificationDelivery.sent_at >= day_start,
        models.NotificationDelivery.sent_at < day_end,
    )
    if user_id is None:
        query = query.filter(models.NotificationDelivery.user_id.is_(None))
    else:
        query = query.filter(models.NotificationDelivery.user_id == user_id)
    return int(query.scalar() or 0)


def record_delivery(
    db: Session,
    *,
    customer_id: int,
    user_id: Optional[int],
    notification_type: str,
    channel: Optional[str],
    status: str,
    recipient: Optional[str] = None,
    payload: Optional[dict[str, Any]] = None,
    error_message: Optional[str] = None,
    provider_message_id: Optional[str] = None,
    attempts: int = 0,
    bucket_id: Optional[int] = None,
    sent_at: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
) -> models.NotificationDelivery:
    delivery = models.NotificationDelivery(
        idempotency_key=idempotency_key,
        customer_id=customer_id,
        user_id=user_id,
        bucket_id=bucket_id,
        notification_type=notification_type,
        channel=channel,
        recipient=recipient,
        payload=payload,
        status=status,
        error_message=error_message,
        provider_message_id=provider_message_id,
        attempts=attempts,
        sent_at=as_utc(sent_at),
    )
    db.add(delivery)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_delivery(db, idempotency_key) if idempotency_key else None
        if existing is None:
            raise
        log_warning("notification_delivery_duplicate", delivery_id=existing.id, idempotency_key=idempotency_key)
        return existing
    db.refresh(delivery)
    return delivery


def find_delivery(db: Session, idempotency_key: str) -> models.NotificationDelivery | None:
    return (
        db.query(models.NotificationDelivery)
        .filter(models.NotificationDelivery.idempotency_key == idempotency_key)
        .first()
    )


def _outcome(delivery: models.NotificationDelivery) -> DispatchOutcome:
    return DispatchOutcome(
        outcome=delivery.status,
        channel=delivery.channel,
        user_id=delivery.user_id,
        error=delivery.error_message,
        delivery_id=delivery.id,
        bucket_id=delivery.bucket_id,
    )


def deliver_now(
    db: Session,
    pref: models.NotificationPreference,
    channel: str,
    event_type: str,
    payload: dict[str, Any],
    *,
    address: str,
    now: Optional[datetime] = None,
    bucket_id: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> models.NotificationDelivery:
    """Send one rendered notification unless quiet hours or the daily cap hold it back.

    Every call leaves exactly one delivery row behind: sent, failed or suppressed.
    """
    now = as_utc(now) or utc_now()
    common = {
        "customer_id": pref.customer_id,
        "user_id": pref.user_id,
        "notification_type": event_type,
        "channel": channel,
        "recipient": address,
        "payload": payload,
        "bucket_id": bucket_id,
        "idempotency_key": idempotency_key,
    }

    if is_quiet_hours(pref.quiet_hours_start, pref.quiet_hours_end, now, pref.timezone):
        log_event("notification_suppressed", reason="quiet_hours", customer_id=pref.customer_id, channel=channel, notification_type=event_type)
        return record_delivery(db, status=models.DeliveryStatus.suppressed.value, error_message="quiet_hours", **common)

    cap = pref.max_notifications_per_day
    if cap is not None and count_sent_today(db, pref.customer_id, pref.user_id, channel, now=now, tz=pref.timezone) >= cap:
        log_event("notification_suppressed", reason="daily_limit", customer_id=pref.customer_id, channel=channel, notification_type=event_type, cap=cap)
        return record_delivery(db, status=models.DeliveryStatus.suppressed.value, error_message="daily_limit", **common)

    content = render(channel, event_type, payload, settings.notification_language)
    result = get_channel(channel).send(Recipient(pref.customer_id, pref.user_id, address), content, db=db)
    if result.success:
        log_event("notification_sent", customer_id=pref.customer_id, user_id=pref.user_id, channel=channel, notification_type=event_type, attempts=result.attempts)
        return record_delivery(
            db,
            status=models.DeliveryStatus.sent.value,
            provider_message_id=result.provider_message_id,
            attempts=result.attempts,
            sent_at=now,
            **common,
        )

    log_warning("notification_failed", customer_id=pref.customer_id, user_id=pref.user_id, channel=channel, notification_type=event_type, error=result.error, attempts=result.attempts)
    return record_delivery(
        db,
        status=models.DeliveryStatus.failed.value,
        error_message=result.error,
        attempts=result.attempts,
        **common,
    )


def recipient_key(idempotency_key: Optional[str], user_id: Optional[int], channel: Optional[str]) -> Optional[str]:
    if not idempotency_key:
        return None
    owner = "tenant" if user_id is None else str(user_id)
    return f"{idempotency_key}:{owner}:{channel or 'none'}"


def _already_dispatched(db: Session, key: str, channel: str, user_id: Optional[int]) -> DispatchOutcome | None:
    delivery = find_delivery(db, key)
    if delivery is not None:
        return _outcome(delivery)
    event = db.query(models.DigestBucketEvent).filter(models.DigestBucketEvent.idempotency_key == key).first()
    if event is not None:
        return DispatchOutcome(outcome="queued", channel=channel, user_id=user_id, bucket_id=event.bucket_id)
    return None


def _dispatch_one(
    db: Session,
    pref: models.NotificationPreference,
    channel: str,
    event_type: str,
    payload: dict[str, Any],
    now: datetime,
    key: Optional[str] = None,
) -> DispatchOutcome:
    if key:
        previous = _already_dispatched(db, key, channel, pref.user_id)
        if previous is not None:
            log_event("notification_already_dispatched", customer_id=pref.customer_id, user_id=pref.user_id, channel=channel, idempotency_key=key)
            return previous

    address = recipient_address(db, pref, channel)
    if not address:
        error = "missing_email" if channel == models.Channel.email.value else "missing_sms_phone"
        log_warning("notification_recipient_missing", customer_id=pref.customer_id, user_id=pref.user_id, channel=channel, error=error)
        delivery = record_delivery(
            db,
            customer_id=pref.customer_id,
            user_id=pref.user_id,
            notification_type=event_type,
            channel=channel,
            status=models.DeliveryStatus.failed.value,
            payload=payload,
            error_message=error,
            idempotency_key=key,
        )
        return _outcome(delivery)

    if pref.cadence_mode == models.CadenceMode.immediate.value or event_type in AGGREGATE_EVENT_TYPES:
        return _outcome(deliver_now(db, pref, channel, event_type, payload, address=address, now=now, idempotency_key=key))

    try:
        appended = append_event(
            db,
            pref.customer_id,
            pref.user_id,
            channel,
            event_type,
            payload,
            cadence_mode=pref.cadence_mode,
            cadence_interval_minutes=pref.cadence_interval_minutes,
            digest_time=pref.digest_time,
            tz=pref.timezone,
            now=now,
            idempotency_key=key,
        )
    except InvalidCadence as exc:
        log_warning("notification_invalid_cadence", customer_id=pref.customer_id, user_id=pref.user_id, cadence_mode=pref.cadence_mode, error=str(exc))
        delivery = record_delivery(
            db,
            customer_id=pref.customer_id,
            user_id=pref.user_id,
            notification_type=event_type,
            channel=channel,
            status=models.DeliveryStatus.failed.value,
            recipient=address,
            payload=payload,
            error_message="invalid_cadence",
            idempotency_key=key,
        )
        return _outcome(delivery)

    log_event("notification_batched", customer_id=pref.customer_id, user_id=pref.user_id, channel=channel, bucket_id=appended.bucket_id, event_count=appended.event_count)
    return DispatchOutcome(outcome="queued", channel=channel, user_id=pref.user_id, bucket_id=appended.bucket_id)


def emit_event(
    db: Session,
    customer_id: int,
    event_type: str,
    payload: dict[str, Any],
    *,
    now: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
) -> list[DispatchOutcome]:
    """Route one event to every subscribed recipient and channel.

    With ``idempotency_key`` set, a recipient/channel pair that already has a
    delivery row or digest entry under that key is reported, not sent again.
    """
    if event_type not in EVENT_TYPES:
        raise UnknownEventType(f"Unknown event type: {event_type}")
    now = as_utc(now) or utc_now()
    payload = dict(payload or {})

    prefs = load_preference_rows(db, customer_id)
    if not prefs:
        log_warning("notification_preferences_missing", customer_id=customer_id, notification_type=event_type)
        delivery = record_delivery(
            db,
            customer_id=customer_id,
            user_id=None,
            notification_type=event_type,
            channel=None,
            status=models.DeliveryStatus.failed.value,
            payload=payload,
            error_message="missing_preferences",
            idempotency_key=recipient_key(idempotency_key, None, None),
        )
        return [_outcome(delivery)]

    outcomes: list[DispatchOutcome] = []
    for pref in prefs:
        pref_id, user_id = pref.id, pref.user_id
        for channel in CHANNELS:
            if not is_subscribed(pref, channel, event_type):
                continue
            key = recipient_key(idempotency_key, user_id, channel)
            try:
                outcomes.append(_dispatch_one(db, pref, channel, event_type, payload, now, key))
            except Exception as exc:  # noqa: BLE001
                db.rollback()
                log_warning("notification_dispatch_error", customer_id=customer_id, user_id=user_id, channel=channel, error=str(exc))
                delivery = record_delivery(
                    db,
                    customer_id=customer_id,
                    user_id=user_id,
                    notification_type=event_type,
                    channel=channel,
                    status=models.DeliveryStatus.failed.value,
                    payload=payload,
                    error_message=f"dispatch_error: {exc}",
                    idempotency_key=key,
                )
                outcomes.append(_outcome(delivery))
                pref = db.get(models.NotificationPreference, pref_id)
    return outcomes


def queue_event(db: Session, customer_id: int, event_type: str, payload: dict[str, Any]) -> models.BackgroundJob:
    if event_type not in EVENT_TYPES:
        raise UnknownEventType(f"Unknown event type: {event_type}")
    return enqueue_job(
        db,
        JOB_TYPE_DISPATCH_NOTIFICATION,
        {
            "customer_id": customer_id,
            "event_type": event_type,
            "payload": payload or {},
            "event_id": uuid.uuid4().hex,
        },
    )
