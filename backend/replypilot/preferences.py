from __future__ import annotations

from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .cadence import parse_hhmm, validate_custom_interval
from .logging_utils import log_event

BOOLEAN_FIELDS = (
    "email_enabled",
    "email_new_lead",
    "email_new_message",
    "sms_enabled",
    "sms_new_lead",
    "sms_new_message",
    "notify_lead_managed",
    "notify_lead_converted",
    "notify_ai_failed",
)
TIME_FIELDS = ("digest_time", "quiet_hours_start", "quiet_hours_end")
UPDATABLE_FIELDS = set(BOOLEAN_FIELDS) | set(TIME_FIELDS) | {
    "email",
    "sms_phone",
    "cadence_mode",
    "cadence_interval_minutes",
    "max_notifications_per_day",
    "timezone",
}
CADENCE_MODES = {mode.value for mode in models.CadenceMode}


def load_preference_rows(db: Session, customer_id: int) -> list[models.NotificationPreference]:
    """Per-user rows when the customer has any, otherwise the tenant-level row."""
    rows = (
        db.query(models.NotificationPreference)
        .filter(models.NotificationPreference.customer_id == customer_id)
        .order_by(models.NotificationPreference.id.asc())
        .all()
    )
    per_user = [row for row in rows if row.user_id is not None]
    if per_user:
        return per_user
    return [row for row in rows if row.user_id is None]


def get_notification_preferences(
    db: Session, customer_id: int, user_id: Optional[int] = None
) -> models.NotificationPreference | None:
    query = db.query(models.NotificationPreference).filter(models.NotificationPreference.customer_id == customer_id)
    if user_id is None:
        query = query.filter(models.NotificationPreference.user_id.is_(None))
    else:
        query = query.filter(models.NotificationPreference.user_id == user_id)
    return query.first()


def _validate(pref: models.NotificationPreference, fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown preference fields: {', '.join(sorted(unknown))}")

    cleaned: dict[str, Any] = {}
    for name, value in fields.items():
        if name in BOOLEAN_FIELDS:
            if value is None:
                raise ValueError(f"{name} cannot be null")
            cleaned[name] = bool(value)
        elif name in TIME_FIELDS:
            if name == "digest_time" and value is None:
                raise ValueError("digest_time cannot be null")
            cleaned[name] = parse_hhmm(value)
        elif name == "max_notifications_per_day":
            if value is not None and int(value) < 0:
                raise ValueError("max_notifications_per_day must be >= 0")
            cleaned[name] = None if value is None else int(value)
        elif name == "timezone":
            try:
                ZoneInfo(str(value))
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"Unknown timezone: {value}") from exc
            cleaned[name] = str(value)
        elif name == "cadence_mode":
            mode = str(value or "").lower()
            if mode not in CADENCE_MODES:
                raise ValueError(f"cadence_mode must be one of {sorted(CADENCE_MODES)}")
            cleaned[name] = mode
        elif name in {"email", "sms_phone"}:
            cleaned[name] = (str(value).strip() or None) if value is not None else None
        else:
            cleaned[name] = value

    mode = cleaned.get("cadence_mode", pref.cadence_mode)
    if mode == models.CadenceMode.custom.value:
        interval = cleaned.get("cadence_interval_minutes", pref.cadence_interval_minutes)
        cleaned["cadence_interval_minutes"] = validate_custom_interval(interval)
    return cleaned


def update_notification_preferences(
    db: Session,
    customer_id: int,
    user_id: Optional[int],
    fields: dict[str, Any],
) -> models.NotificationPreference:
    if db.get(models.Customer, customer_id) is None:
        raise LookupError(f"Customer {customer_id} not found")

    pref = get_notification_preferences(db, customer_id, user_id)
    created = pref is None
    if pref is None:
        pref = models.NotificationPreference(
            customer_id=customer_id,
            user_id=user_id,
            cadence_mode=models.CadenceMode.immediate.value,
        )

    for name, value in _validate(pref, fields).items():
        setattr(pref, name, value)

    db.add(pref)
    try:
        db.commit()
    except IntegrityError:
        # Another request created the row first; apply the update to that one.
        db.rollback()
        if not created:
            raise
        pref = get_notification_preferences(db, customer_id, user_id)
        if pref is None:
            raise
        for name, value in _validate(pref, fields).items():
            setattr(pref, name, value)
        db.add(pref)
        db.commit()
    db.refresh(pref)
    log_event(
        "notification_preferences_updated",
        customer_id=customer_id,
        user_id=user_id,
        fields=sorted(fields),
    )
    return pref
