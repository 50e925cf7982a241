from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from . import models
from .logging_utils import log_event, log_warning
from .sms_providers import ReleaseResult

ALLOCATION_RETRIES = 5
FREE_STATUSES = (models.PoolNumberStatus.unallocated.value, models.PoolNumberStatus.released.value)


class NoNumbersAvailable(Exception):
    code = "no_numbers_available"

    def __init__(self, message: str = "No numbers available in pool"):
        super().__init__(message)


def _free_numbers(db: Session):
    return db.query(models.PoolNumber).filter(
        models.PoolNumber.status.in_(FREE_STATUSES),
        models.PoolNumber.is_active.is_(True),
        models.PoolNumber.customer_id.is_(None),
    )


def get_allocated_number(db: Session, customer_id: int) -> models.PoolNumber | None:
    return (
        db.query(models.PoolNumber)
        .filter(
            models.PoolNumber.customer_id == customer_id,
            models.PoolNumber.status == models.PoolNumberStatus.allocated.value,
            models.PoolNumber.is_active.is_(True),
        )
        .order_by(models.PoolNumber.allocated_at.desc())
        .first()
    )


def allocate_from_pool(db: Session, customer_id: int, *, max_retries: int = ALLOCATION_RETRIES) -> models.PoolNumber:
    """Hand one free pool number to ``customer_id``.

    The candidate row is locked with SKIP LOCKED on PostgreSQL, and the final
    write is a compare-and-swap on (status, version) so a number is never
    handed out twice even where row locks are unavailable.
    """
    existing = get_allocated_number(db, customer_id)
    if existing is not None:
        return existing

    for attempt in range(1, max_retries + 1):
        query = _free_numbers(db).order_by(models.PoolNumber.id.asc())
        if db.bind and db.bind.dialect.name == "postgresql":
            query = query.with_for_update(skip_locked=True)
        candidate = query.first()
        if candidate is None:
            db.rollback()
            log_warning("pool_exhausted", customer_id=customer_id)
            raise NoNumbersAvailable()

        now = datetime.now(timezone.utc)
        updated = (
            db.query(models.PoolNumber)
            .filter(
                models.PoolNumber.id == candidate.id,
                models.PoolNumber.version == candidate.version,
                models.PoolNumber.status == candidate.status,
                models.PoolNumber.customer_id.is_(None),
            )
            .update(
                {
                    "status": models.PoolNumberStatus.allocated.value,
                    "customer_id": customer_id,
                    "version": models.PoolNumber.version + 1,
                    "allocated_at": now,
                    "released_at": None,
                },
                synchronize_session=False,
            )
        )
        if updated == 1:
            db.commit()
            db.refresh(candidate)
            log_event("pool_number_allocated", customer_id=customer_id, phone_number=candidate.phone_number, attempt=attempt)
            return candidate
        db.rollback()
        log_warning("pool_allocation_conflict", customer_id=customer_id, pool_number_id=candidate.id, attempt=attempt)

    raise NoNumbersAvailable("Could not allocate a pool number after concurrent conflicts")


def release_to_pool(db: Session, customer_id: int, phone_number: str) -> ReleaseResult:
    number = (
        db.query(models.PoolNumber)
        .filter(
            models.PoolNumber.customer_id == customer_id,
            models.PoolNumber.phone_number == phone_number,
            models.PoolNumber.status == models.PoolNumberStatus.allocated.value,
            models.PoolNumber.is_active.is_(True),
        )
        .first()
    )
    if number is None:
        return ReleaseResult(success=False, error="not_found_or_already_released")

    updated = (
        db.query(models.PoolNumber)
        .filter(models.PoolNumber.id == number.id, models.PoolNumber.version == number.version)
        .update(
            {
                "status": models.PoolNumberStatus.released.value,
                "customer_id": None,
                "version": models.PoolNumber.version + 1,
                "released_at": datetime.now(timezone.utc),
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        return ReleaseResult(success=False, error="not_found_or_already_released")
    db.commit()
    log_event("pool_number_released", customer_id=customer_id, phone_number=phone_number)
    return ReleaseResult(success=True)


def normalize_phone_number(phone_number: str) -> str:
    normalized = "".join(str(phone_number or "").split())
    if len(normalized) < 8:
        raise ValueError("Invalid phone number")
    return normalized


def add_to_pool(db: Session, phone_number: str, notes: str | None = None) -> models.PoolNumber:
    number = models.PoolNumber(
        phone_number=normalize_phone_number(phone_number),
        notes=notes or None,
        status=models.PoolNumberStatus.unallocated.value,
    )
    db.add(number)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("Phone number already in pool") from exc
    db.refresh(number)
    log_event("pool_number_added", phone_number=number.phone_number)
    return number


def list_pool_numbers(db: Session) -> list[models.PoolNumber]:
    return _free_numbers(db).order_by(models.PoolNumber.created_at.desc(), models.PoolNumber.id.desc()).all()


def list_allocated_numbers(db: Session) -> list[models.PoolNumber]:
    return (
        db.query(models.PoolNumber)
        .options(joinedload(models.PoolNumber.customer))
        .filter(
            models.PoolNumber.customer_id.isnot(None),
            models.PoolNumber.status == models.PoolNumberStatus.allocated.value,
            models.PoolNumber.is_active.is_(True),
        )
        .order_by(models.PoolNumber.allocated_at.desc())
        .all()
    )
