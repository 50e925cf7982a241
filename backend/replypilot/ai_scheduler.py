from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import models
from .cadence import as_utc, utc_now
from .logging_utils import log_debug, log_warning
from .task_queue import JOB_TYPE_AI_GENERATE, enqueue_job


def conversation_dedupe_key(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


def _setting(ai_settings: Any, name: str) -> Any:
    if isinstance(ai_settings, dict):
        return ai_settings.get(name)
    return getattr(ai_settings, name, None)


def debounce_seconds(ai_settings: Any) -> int:
    for name in ("debounce_window_seconds", "auto_response_delay_seconds"):
        value = _setting(ai_settings, name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return max(0, int(value))
    return 0


def _queued_job(db: Session, conversation_id: int) -> models.BackgroundJob | None:
    key = conversation_dedupe_key(conversation_id)
    return (
        db.query(models.BackgroundJob)
        .filter(
            models.BackgroundJob.job_type == JOB_TYPE_AI_GENERATE,
            models.BackgroundJob.status == "queued",
            or_(models.BackgroundJob.dedupe_key == key, models.BackgroundJob.dedupe_key.like(f"{key}:%")),
        )
        .order_by(models.BackgroundJob.id.desc())
        .first()
    )


def schedule_ai_response(
    db: Session,
    customer_id: int,
    conversation_id: int,
    latest_message_id: Optional[int],
    latest_message_body: Optional[str],
    ai_settings: Any,
    *,
    now: Optional[datetime] = None,
) -> models.BackgroundJob | None:
    """Keep a single pending AI reply job per conversation, pushed back on every new message.

    Returns the queued job, or None when auto-response is off or scheduling failed.
    """
    if not ai_settings or _setting(ai_settings, "auto_response_enabled") is False:
        log_debug("ai_schedule_skipped", customer_id=customer_id, conversation_id=conversation_id)
        return None

    now = as_utc(now) or utc_now()
    delay = debounce_seconds(ai_settings)
    scheduled_for = now + timedelta(seconds=delay)
    payload = {
        "customer_id": customer_id,
        "conversation_id": conversation_id,
        "lead_message": latest_message_body,
        "latest_inbound_message_id": latest_message_id,
        "ai_job_id": str(int(scheduled_for.timestamp() * 1000)),
        "delay_seconds": delay,
        "scheduled_for": scheduled_for.isoformat(),
    }

    try:
        job = _queued_job(db, conversation_id)
        if job is not None:
            job.run_at = scheduled_for
            job.payload = payload
            db.add(job)
            db.commit()
            db.refresh(job)
        else:
            key = conversation_dedupe_key(conversation_id)
            job = enqueue_job(db, JOB_TYPE_AI_GENERATE, payload, dedupe_key=key, run_at=scheduled_for)
            if getattr(job, "_deduped", False):
                # The current job is already running; queue the follow-up behind it.
                job = enqueue_job(db, JOB_TYPE_AI_GENERATE, payload, dedupe_key=f"{key}:after:{job.id}", run_at=scheduled_for)
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        log_warning("ai_schedule_failed", customer_id=customer_id, conversation_id=conversation_id, error=str(exc))
        return None

    log_debug(
        "ai_response_scheduled",
        customer_id=customer_id,
        conversation_id=conversation_id,
        job_id=job.id,
        delay_seconds=delay,
        scheduled_for=scheduled_for,
    )
    return job
