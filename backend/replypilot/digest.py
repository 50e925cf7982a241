"""Time-windowed digest buckets.

A bucket collects events for one (customer, user, channel) inside one
cadence window. While it accepts events its ``open_key`` is set; the unique
index on that column keeps a single open bucket per window. The flush path
clears ``open_key`` when it claims a bucket, so later events start a new one.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime, time, timedelta
from typing import Any, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .cadence import as_utc, compute_window, utc_now
from .config import settings
from .logging_utils import log_event, log_warning
from .notification_templates import build_lead_link, event_excerpt, summarize_event_types
from .task_queue import JOB_TYPE_FLUSH_DIGEST, enqueue_job

APPEND_RETRIES = 3


@dataclass(frozen=True)
class AppendResult:
    bucket_id: int
    created: bool
    event_count: int


@dataclass
class FlushOutcome:
    bucket_id: int
    outcome: str
    error: Optional[str] = None
    delivery_id: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def open_key_for(customer_id: int, user_id: Optional[int], channel: str, window_start: datetime, window_end: datetime) -> str:
    owner = "tenant" if user_id is None else str(user_id)
    return f"{customer_id}:{owner}:{channel}:{as_utc(window_start).isoformat()}:{as_utc(window_end).isoformat()}"


def flush_dedupe_key(bucket_id: int) -> str:
    return f"digest_bucket:{bucket_id}"


def schedule_flush(db: Session, bucket_id: int, scheduled_for: datetime) -> models.BackgroundJob:
    return enqueue_job(
        db,
        JOB_TYPE_FLUSH_DIGEST,
        {"bucket_id": bucket_id},
        dedupe_key=flush_dedupe_key(bucket_id),
        run_at=as_utc(scheduled_for),
    )


def _find_keyed_event(db: Session, idempotency_key: str) -> models.DigestBucketEvent | None:
    return (
        db.query(models.DigestBucketEvent)
        .filter(models.DigestBucketEvent.idempotency_key == idempotency_key)
        .first()
    )


def append_event(
    db: Session,
    customer_id: int,
    user_id: Optional[int],
    channel: str,
    event_type: str,
    payload: dict[str, Any],
    *,
    cadence_mode: str,
    cadence_interval_minutes: Optional[int] = None,
    digest_time: Optional[time] = None,
    tz: Optional[str] = None,
    now: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
) -> AppendResult:
    """Add one event to the open bucket for its window, creating the bucket if needed.

    An event already stored under ``idempotency_key`` is not appended twice.
    Raises ``InvalidCadence`` for cadences that do not batch.
    """
    now = as_utc(now) or utc_now()
    if idempotency_key:
        existing = _find_keyed_event(db, idempotency_key)
        if existing is not None:
            return AppendResult(bucket_id=existing.bucket_id, created=False, event_count=existing.seq)
    window = compute_window(cadence_mode, cadence_interval_minutes, digest_time, now, tz)
    key = open_key_for(customer_id, user_id, channel, window.window_start, window.window_end)

    for attempt in range(1, APPEND_RETRIES + 1):
        created = False
        bucket = db.query(models.DigestBucket).filter(models.DigestBucket.open_key == key).first()
        if bucket is None:
            bucket = models.DigestBucket(
                customer_id=customer_id,
                user_id=user_id,
                channel=channel,
                open_key=key,
                window_start=window.window_start,
                window_end=window.window_end,
                scheduled_for=window.scheduled_for,
                status=models.BucketStatus.pending.value,
                event_count=0,
                event_types=[],
            )
            db.add(bucket)
            try:
                db.commit()
            except IntegrityError:
                # Lost the race to create this window's bucket; append to the winner's.
                db.rollback()
                continue
            created = True
            schedule_flush(db, bucket.id, window.scheduled_for)
            log_event(
                "digest_bucket_created",
                bucket_id=bucket.id,
                customer_id=customer_id,
                user_id=user_id,
                channel=channel,
                window_start=window.window_start,
                window_end=window.window_end,
            )

        bucket_id = bucket.id
        updated = (
            db.query(models.DigestBucket)
            .filter(models.DigestBucket.id == bucket_id, models.DigestBucket.open_key == key)
            .update({"event_count": models.DigestBucket.event_count + 1}, synchronize_session=False)
        )
        if updated != 1:
            # Claimed by a flush between lookup and append.
            db.rollback()
            log_warning("digest_append_retry", bucket_id=bucket_id, attempt=attempt)
            continue

        seq, event_types = (
            db.query(models.DigestBucket.event_count, models.DigestBucket.event_types)
            .filter(models.DigestBucket.id == bucket_id)
            .one()
        )
        event_types = list(event_types or [])
        if event_type not in event_types:
            db.query(models.DigestBucket).filter(models.DigestBucket.id == bucket_id).update(
                {"event_types": event_types + [event_type]}, synchronize_session=False
            )
        db.add(
            models.DigestBucketEvent(
                bucket_id=bucket_id,
                seq=seq,
                event_type=event_type,
                payload=payload,
                occurred_at=now,
                idempotency_key=idempotency_key,
            )
        )
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = _find_keyed_event(db, idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return AppendResult(bucket_id=existing.bucket_id, created=False, event_count=existing.seq)
        return AppendResult(bucket_id=bucket_id, created=created, event_count=seq)

    raise RuntimeError(f"Could not append {event_type} to digest bucket {key} after {APPEND_RETRIES} attempts")


def _event_item(event: models.DigestBucketEvent) -> dict[str, Any]:
    payload = event.payload or {}
    has_link = payload.get("lead_link") or payload.get("lead_id") is not None or payload.get("conversation_id") is not None
    return {
        "type": event.event_type,
        "occurred_at": as_utc(event.occurred_at).isoformat(),
        "excerpt": event_excerpt(event.event_type, payload),
        "lead_link": build_lead_link(payload) if has_link else None,
    }


def build_digest_summary(
    db: Session,
    bucket: models.DigestBucket,
    *,
    lang: Optional[str] = None,
    max_events: Optional[int] = None,
) -> dict[str, Any]:
    max_events = max_events or settings.digest_max_events
    recent = (
        db.query(models.DigestBucketEvent)
        .filter(models.DigestBucketEvent.bucket_id == bucket.id)
        .order_by(models.DigestBucketEvent.seq.desc())
        .limit(max_events)
        .all()
    )
    recent.reverse()

    counts = Counter(
        event_type
        for (event_type,) in db.query(models.DigestBucketEvent.event_type).filter(
            models.DigestBucketEvent.bucket_id == bucket.id
        )
    )
    event_types = list(bucket.event_types or [])
    ordered_counts = {event_type: counts[event_type] for event_type in event_types if counts.get(event_type)}
    total = bucket.event_count or sum(counts.values())

    return {
        "event_count": total,
        "event_types": event_types,
        "events": [_event_item(event) for event in recent],
        "summary": summarize_event_types(ordered_counts, total, lang),
        "window_start": as_utc(bucket.window_start).isoformat(),
        "window_end": as_utc(bucket.window_end).isoformat(),
    }


def _claim(db: Session, bucket_id: int, now: datetime) -> bool:
    stale_cutoff = now - timedelta(seconds=settings.digest_claim_stale_after_seconds)
    claimed = (
        db.query(models.DigestBucket)
        .filter(
            models.DigestBucket.id == bucket_id,
            models.DigestBucket.status == models.BucketStatus.pending.value,
            or_(models.DigestBucket.claimed_at.is_(None), models.DigestBucket.claimed_at < stale_cutoff),
        )
        .update({"claimed_at": now, "open_key": None}, synchronize_session=False)
    )
    if claimed != 1:
        db.rollback()
        return False
    db.commit()
    return True


def _finish(db: Session, bucket_id: int, status: str, *, error: Optional[str], now: datetime) -> None:
    values: dict[str, Any] = {"status": status, "error_message": error}
    if status == models.BucketStatus.sent.value:
        values["sent_at"] = now
    (
        db.query(models.DigestBucket)
        .filter(models.DigestBucket.id == bucket_id, models.DigestBucket.status == models.BucketStatus.pending.value)
        .update(values, synchronize_session=False)
    )
    db.commit()


def _outcome_from_delivery(delivery: models.NotificationDelivery) -> tuple[str, Optional[str]]:
    if delivery.status == models.DeliveryStatus.sent.value:
        return models.BucketStatus.sent.value, None
    if delivery.status == models.DeliveryStatus.suppressed.value:
        return models.BucketStatus.failed.value, f"suppressed:{delivery.error_message}"
    return models.BucketStatus.failed.value, delivery.error_message or "delivery_failed"


def _deliver_bucket(db: Session, bucket: models.DigestBucket, now: datetime) -> models.NotificationDelivery:
    from .dispatcher import deliver_now, record_delivery, recipient_address  # noqa: PLC0415
    from .preferences import get_notification_preferences  # noqa: PLC0415

    pref = get_notification_preferences(db, bucket.customer_id, bucket.user_id)
    if pref is None:
        return record_delivery(
            db,
            customer_id=bucket.customer_id,
            user_id=bucket.user_id,
            notification_type="digest",
            channel=bucket.channel,
            status=models.DeliveryStatus.failed.value,
            error_message="missing_preferences",
            bucket_id=bucket.id,
        )

    address = recipient_address(db, pref, bucket.channel)
    if not address:
        return record_delivery(
            db,
            customer_id=bucket.customer_id,
            user_id=bucket.user_id,
            notification_type="digest",
            channel=bucket.channel,
            status=models.DeliveryStatus.failed.value,
            error_message=f"missing_{'email' if bucket.channel == 'email' else 'sms_phone'}",
            bucket_id=bucket.id,
        )

    payload = build_digest_summary(db, bucket)
    return deliver_now(db, pref, bucket.channel, "digest", payload, address=address, now=now, bucket_id=bucket.id)


def flush_bucket(db: Session, bucket_id: int, *, now: Optional[datetime] = None) -> FlushOutcome:
    """Deliver a due bucket once and move it to sent or failed.

    Duplicate or late calls are no-ops: the claim only succeeds for a pending
    bucket without a live claim.
    """
    now = as_utc(now) or utc_now()
    if not _claim(db, bucket_id, now):
        log_event("digest_flush_skipped", bucket_id=bucket_id)
        return FlushOutcome(bucket_id=bucket_id, outcome="skipped")

    bucket = db.get(models.DigestBucket, bucket_id)
    try:
        delivery = (
            db.query(models.NotificationDelivery)
            .filter(models.NotificationDelivery.bucket_id == bucket_id)
            .first()
        )
        if delivery is None:
            if not bucket.event_count:
                _finish(db, bucket_id, models.BucketStatus.failed.value, error="empty_bucket", now=now)
                return FlushOutcome(bucket_id=bucket_id, outcome=models.BucketStatus.failed.value, error="empty_bucket")
            delivery = _deliver_bucket(db, bucket, now)
    except Exception:
        db.rollback()
        (
            db.query(models.DigestBucket)
            .filter(models.DigestBucket.id == bucket_id, models.DigestBucket.status == models.BucketStatus.pending.value)
            .update({"claimed_at": None}, synchronize_session=False)
        )
        db.commit()
        raise

    status, error = _outcome_from_delivery(delivery)
    _finish(db, bucket_id, status, error=error, now=now)
    log_event(
        "digest_flushed",
        bucket_id=bucket_id,
        customer_id=bucket.customer_id,
        channel=bucket.channel,
        status=status,
        error=error,
        event_count=bucket.event_count,
    )
    return FlushOutcome(bucket_id=bucket_id, outcome=status, error=error, delivery_id=delivery.id)


def sweep_due_buckets(db: Session, *, now: Optional[datetime] = None) -> int:
    """Enqueue flush jobs for pending buckets that are past due and not held by a live claim."""
    now = as_utc(now) or utc_now()
    stale_cutoff = now - timedelta(seconds=settings.digest_claim_stale_after_seconds)
    due_ids = [
        bucket_id
        for (bucket_id,) in db.query(models.DigestBucket.id)
        .filter(
            models.DigestBucket.status == models.BucketStatus.pending.value,
            models.DigestBucket.scheduled_for <= now,
            or_(models.DigestBucket.claimed_at.is_(None), models.DigestBucket.claimed_at < stale_cutoff),
        )
        .order_by(models.DigestBucket.scheduled_for.asc())
        .all()
    ]
    enqueued = 0
    for bucket_id in due_ids:
        job = schedule_flush(db, bucket_id, now)
        if not getattr(job, "_deduped", False):
            enqueued += 1
    if enqueued:
        log_event("digest_sweep_enqueued", count=enqueued)
    return enqueued
