import enum
from datetime import time

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    TIMESTAMP,
    Time,
    ForeignKey,
    UniqueConstraint,
    Index,
    func,
    Boolean,
    JSON,
    text,
)
from sqlalchemy.orm import relationship
from .database import Base


class CadenceMode(str, enum.Enum):
    immediate = "immediate"
    hourly = "hourly"
    daily = "daily"
    custom = "custom"


class Channel(str, enum.Enum):
    email = "email"
    sms = "sms"


class BucketStatus(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class DeliveryStatus(str, enum.Enum):
    sent = "sent"
    failed = "failed"
    suppressed = "suppressed"


class PoolNumberStatus(str, enum.Enum):
    unallocated = "unallocated"
    allocated = "allocated"
    released = "released"


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255))
    status = Column(String(20), nullable=False, server_default="trial")
    sms_provider = Column(String(50), nullable=True, index=True)
    fonecloud_sender_id = Column(String(50), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    users = relationship("User", back_populates="customer", cascade="all, delete-orphan")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(255))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    customer = relationship("Customer", back_populates="users")


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"
    __table_args__ = (
        UniqueConstraint("customer_id", "user_id", name="uq_notification_preference_recipient"),
        # NULLs never collide in the constraint above; one tenant row per customer.
        Index(
            "uq_notification_preference_tenant",
            "customer_id",
            unique=True,
            sqlite_where=text("user_id IS NULL"),
            postgresql_where=text("user_id IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)

    email_enabled = Column(Boolean, nullable=False, default=True, server_default="true")
    email = Column(String(255), nullable=True)
    email_new_lead = Column(Boolean, nullable=False, default=True, server_default="true")
    email_new_message = Column(Boolean, nullable=False, default=False, server_default="false")

    sms_enabled = Column(Boolean, nullable=False, default=False, server_default="false")
    sms_phone = Column(String(32), nullable=True)
    sms_new_lead = Column(Boolean, nullable=False, default=True, server_default="true")
    sms_new_message = Column(Boolean, nullable=False, default=False, server_default="false")

    notify_lead_managed = Column(Boolean, nullable=False, default=True, server_default="true")
    notify_lead_converted = Column(Boolean, nullable=False, default=True, server_default="true")
    notify_ai_failed = Column(Boolean, nullable=False, default=True, server_default="true")

    cadence_mode = Column(String(20), nullable=False, default=CadenceMode.immediate.value, server_default="immediate")
    cadence_interval_minutes = Column(Integer, nullable=True)
    digest_time = Column(Time, nullable=False, default=time(9, 0), server_default="09:00:00")
    max_notifications_per_day = Column(Integer, nullable=True)
    quiet_hours_start = Column(Time, nullable=True)
    quiet_hours_end = Column(Time, nullable=True)
    timezone = Column(String(64), nullable=False, default="Europe/Copenhagen", server_default="Europe/Copenhagen")

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    customer = relationship("Customer")
    user = relationship("User")


class DigestBucket(Base):
    __tablename__ = "digest_buckets"
    __table_args__ = (
        Index("ix_digest_buckets_due", "status", "scheduled_for"),
        Index("ix_digest_buckets_customer", "customer_id", "status", "window_end"),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    channel = Column(String(20), nullable=False)
    # Set while the bucket accepts events; cleared once the flush worker claims it.
    open_key = Column(String(200), nullable=True, unique=True)
    window_start = Column(TIMESTAMP(timezone=True), nullable=False)
    window_end = Column(TIMESTAMP(timezone=True), nullable=False)
    scheduled_for = Column(TIMESTAMP(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default=BucketStatus.pending.value, server_default="pending")
    event_count = Column(Integer, nullable=False, default=0, server_default="0")
    event_types = Column(JSON, nullable=False, default=list)
    claimed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    sent_at = Column(TIMESTAMP(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    events = relationship(
        "DigestBucketEvent",
        back_populates="bucket",
        cascade="all, delete-orphan",
        order_by="DigestBucketEvent.seq",
    )


class DigestBucketEvent(Base):
    __tablename__ = "digest_bucket_events"
    __table_args__ = (UniqueConstraint("bucket_id", "seq", name="uq_digest_bucket_event_seq"),)

    id = Column(Integer, primary_key=True, index=True)
    bucket_id = Column(Integer, ForeignKey("digest_buckets.id", ondelete="CASCADE"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    event_type = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False)
    occurred_at = Column(TIMESTAMP(timezone=True), nullable=False)
    idempotency_key = Column(String(200), nullable=True, unique=True, index=True)

    bucket = relationship("DigestBucket", back_populates="events")


class NotificationDelivery(Base):
    __tablename__ = "notification_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    bucket_id = Column(Integer, ForeignKey("digest_buckets.id", ondelete="SET NULL"), nullable=True, unique=True)
    notification_type = Column(String(50), nullable=False, index=True)
    channel = Column(String(20), nullable=True)
    recipient = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    # Set for deliveries made by a queued job so a re-delivered job can find them.
    idempotency_key = Column(String(200), nullable=True, unique=True, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    sent_at = Column(TIMESTAMP(timezone=True), nullable=True, index=True)


class PoolNumber(Base):
    __tablename__ = "pool_numbers"

    id = Column(Integer, primary_key=True, index=True)
    phone_number = Column(String(32), unique=True, nullable=False)
    provider = Column(String(50), nullable=False, default="fonecloud", server_default="fonecloud")
    status = Column(String(20), nullable=False, default=PoolNumberStatus.unallocated.value, server_default="unallocated")
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    version = Column(Integer, nullable=False, default=0, server_default="0")
    notes = Column(Text, nullable=True)
    allocated_at = Column(TIMESTAMP(timezone=True), nullable=True)
    released_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    customer = relationship("Customer", foreign_keys=[customer_id])


class OwnedNumber(Base):
    __tablename__ = "owned_numbers"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="twilio", server_default="twilio")
    phone_number = Column(String(32), nullable=False, index=True)
    provider_sid = Column(String(64), nullable=True)
    friendly_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    released_at = Column(TIMESTAMP(timezone=True), nullable=True)


class BackgroundJob(Base):
    __tablename__ = "background_jobs"
    __table_args__ = (UniqueConstraint("job_type", "dedupe_key", name="uq_background_job_dedupe_key"),)

    id = Column(Integer, primary_key=True, index=True)
    job_type = Column(String(50), nullable=False, index=True)
    dedupe_key = Column(String(200), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, index=True, server_default="queued")
    attempts = Column(Integer, nullable=False, server_default="0")
    max_attempts = Column(Integer, nullable=False, server_default="3")
    run_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)
    locked_at = Column(TIMESTAMP(timezone=True), nullable=True)
    locked_by = Column(String(100), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    finished_at = Column(TIMESTAMP(timezone=True), nullable=True)
