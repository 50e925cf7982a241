from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .logging_utils import log_event, log_warning


JOB_TYPE_FLUSH_DIGEST = "flush_digest"
JOB_TYPE_SWEEP_DIGESTS = "sweep_digests"
JOB_TYPE_SEND_SMS = "send_sms"
JOB_TYPE_DISPATCH_NOTIFICATION = "dispatch_notification"
JOB_TYPE_AI_GENERATE = "ai_generate"

JobHandler = Callable[[Session, dict[str, Any]], Any]

_JOB_HANDLERS: dict[str, JobHandler] = {}


class PermanentJobError(Exception):
    """A job failure that retrying cannot fix."""


def register_job_handler(job_type: str, handler: JobHandler) -> None:
    if not job_type:
        raise ValueError("job_type is required")
    _JOB_HANDLERS[job_type] = handler


def unregister_job_handler(job_type: str) -> None:
    _JOB_HANDLERS.pop(job_type, None)


def enqueue_job(
    db: Session,
    job_type: str,
    payload: dict[str, Any],
    *,
    dedupe_key: str | None = None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
) -> models.BackgroundJob:
    job = models.BackgroundJob(
        job_type=job_type,
        dedupe_key=dedupe_key,
        payload=payload,
        status="queued",
        attempts=0,
        max_attempts=max_attempts or settings.task_queue_max_attempts,
        run_at=(run_at or _now_utc()).astimezone(timezone.utc),
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if dedupe_key is None:
            raise
        existing = find_active_job(db, job_type, dedupe_key)
        if existing is None:
            raise
        setattr(existing, "_deduped", True)
        return existing
    db.refresh(job)
    log_event("job_enqueued", job_id=job.id, job_type=job.job_type, run_at=job.run_at)
    return job


def find_active_job(db: Session, job_type: str, dedupe_key: str) -> models.BackgroundJob | None:
    return (
        db.query(models.BackgroundJob)
        .filter(
            models.BackgroundJob.job_type == job_type,
            models.BackgroundJob.dedupe_key == dedupe_key,
            models.BackgroundJob.status.in_(["queued", "running"]),
        )
        .order_by(models.BackgroundJob.id.desc())
        .first()
    )


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def requeue_stale_jobs(db: Session, *, stale_after_seconds: int | None = None) -> int:
    stale_after_seconds = stale_after_seconds or settings.task_queue_stale_after_seconds
    cutoff = _now_utc() - timedelta(seconds=stale_after_seconds)
    count = (
        db.query(models.BackgroundJob)
        .filter(models.BackgroundJob.status == "running", models.BackgroundJob.locked_at != None, models.BackgroundJob.locked_at < cutoff)  # noqa: E711
        .update(
            {
                "status": "queued",
                "locked_at": None,
                "locked_by": None,
            },
            synchronize_session=False,
        )
    )
    if count:
        db.commit()
        log_warning("jobs_requeued_stale", count=count)
    return int(count or 0)


def claim_next_job(
    db: Session,
    *,
    worker_id: str,
    job_types: Iterable[str] | None = None,
    now: datetime | None = None,
) -> models.BackgroundJob | None:
    now = now or _now_utc()
    query = db.query(models.BackgroundJob).filter(
        models.BackgroundJob.status == "queued",
        models.BackgroundJob.run_at <= now,
    )
    if job_types:
        query = query.filter(models.BackgroundJob.job_type.in_(list(job_types)))
    query = query.order_by(models.BackgroundJob.run_at.asc(), models.BackgroundJob.id.asc())
    if db.bind and db.bind.dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)
    job = query.first()
    if not job:
        return None
    job.status = "running"
    job.locked_at = now
    job.locked_by = worker_id
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def mark_job_succeeded(db: Session, job: models.BackgroundJob) -> None:
    job.status = "succeeded"
    job.finished_at = _now_utc()
    job.dedupe_key = None
    db.add(job)
    db.commit()
    log_event("job_succeeded", job_id=job.id, job_type=job.job_type, attempts=job.attempts)


def mark_job_failed(db: Session, job: models.BackgroundJob, error: str, *, retry: bool = True) -> None:
    job.attempts = (job.attempts or 0) + 1
    job.last_error = error
    job.locked_at = None
    job.locked_by = None
    if retry and job.attempts < (job.max_attempts or settings.task_queue_max_attempts):
        backoff_seconds = min(60, 2 ** max(0, job.attempts - 1))
        job.status = "queued"
        job.run_at = _now_utc() + timedelta(seconds=backoff_seconds)
        db.add(job)
        db.commit()
        log_warning(
            "job_failed_retrying",
            job_id=job.id,
            job_type=job.job_type,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            backoff_seconds=backoff_seconds,
            error=error,
        )
        return

    job.status = "failed"
    job.finished_at = _now_utc()
    job.dedupe_key = None
    db.add(job)
    db.commit()
    log_warning(
        "job_failed",
        job_id=job.id,
        job_type=job.job_type,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        error=error,
    )


def _flush_digest(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    from .digest import flush_bucket  # noqa: PLC0415

    outcome = flush_bucket(db, int(payload["bucket_id"]))
    return outcome.as_dict()


def _sweep_digests(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    from .digest import sweep_due_buckets  # noqa: PLC0415

    return {"enqueued": sweep_due_buckets(db)}


def _send_sms(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    from .channels import deliver_with_retries  # noqa: PLC0415
    from .dispatcher import find_delivery, record_delivery  # noqa: PLC0415
    from .sms_gateway import send_sms  # noqa: PLC0415

    customer_id = payload.get("customer_id")
    # Without a customer there is no delivery log to check, so such messages are at-least-once.
    key = f"sms:{payload['message_id']}" if payload.get("message_id") and customer_id is not None else None
    if key:
        previous = find_delivery(db, key)
        if previous is not None:
            log_event("sms_job_already_sent", customer_id=customer_id, delivery_id=previous.id, status=previous.status)
            if previous.status != models.DeliveryStatus.sent.value:
                raise PermanentJobError(previous.error_message or "sms_send_failed")
            return {"provider_message_id": previous.provider_message_id, "attempts": previous.attempts, "skipped": True}

    result = deliver_with_retries(
        lambda: send_sms(
            db,
            customer_id=customer_id,
            to=payload["to"],
            body=payload["body"],
            from_number=payload.get("from_number"),
        ),
        context={"customer_id": customer_id, "channel": "sms"},
    )
    if key:
        record_delivery(
            db,
            customer_id=int(customer_id),
            user_id=None,
            notification_type=JOB_TYPE_SEND_SMS,
            channel=models.Channel.sms.value,
            status=models.DeliveryStatus.sent.value if result.success else models.DeliveryStatus.failed.value,
            recipient=payload["to"],
            error_message=result.error,
            provider_message_id=result.provider_message_id,
            attempts=result.attempts,
            sent_at=_now_utc() if result.success else None,
            idempotency_key=key,
        )
    if not result.success:
        raise PermanentJobError(result.error or "sms_send_failed")
    return {"provider_message_id": result.provider_message_id, "attempts": result.attempts}


def _dispatch_notification(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    from .dispatcher import emit_event  # noqa: PLC0415

    event_id = payload.get("event_id")
    outcomes = emit_event(
        db,
        int(payload["customer_id"]),
        payload["event_type"],
        payload.get("payload") or {},
        idempotency_key=f"event:{event_id}" if event_id else None,
    )
    return {"outcomes": [outcome.outcome for outcome in outcomes]}


_BUILTIN_HANDLERS: dict[str, JobHandler] = {
    JOB_TYPE_FLUSH_DIGEST: _flush_digest,
    JOB_TYPE_SWEEP_DIGESTS: _sweep_digests,
    JOB_TYPE_SEND_SMS: _send_sms,
    JOB_TYPE_DISPATCH_NOTIFICATION: _dispatch_notification,
}


def process_job(db: Session, job: models.BackgroundJob) -> None:
    payload = job.payload or {}
    handler = _JOB_HANDLERS.get(job.job_type) or _BUILTIN_HANDLERS.get(job.job_type)
    if handler is None:
        mark_job_failed(db, job, error=f"Unknown job_type: {job.job_type}", retry=False)
        return
    try:
        result = handler(db, payload)
        log_event("job_processed", job_id=job.id, job_type=job.job_type, result=result)
        mark_job_succeeded(db, job)
    except PermanentJobError as exc:
        db.rollback()
        mark_job_failed(db, job, error=str(exc), retry=False)
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        mark_job_failed(db, job, error=str(exc))


def idle_sleep() -> None:
    time.sleep(max(0.1, float(settings.task_queue_poll_interval_seconds)))
