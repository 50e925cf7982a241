"""Add digest buckets, bucket events and the notification delivery log

Revision ID: 0001_digest_buckets
Revises: 0000_initial_schema
Create Date: 2026-09-21
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_digest_buckets"
down_revision = "0000_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "digest_buckets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("open_key", sa.String(length=200), nullable=True),
        sa.Column("window_start", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("window_end", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("scheduled_for", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("event_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("event_types", sa.JSON(), nullable=False),
        sa.Column("claimed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("open_key", name="uq_digest_buckets_open_key"),
        sa.CheckConstraint("status IN ('pending', 'sent', 'failed')", name="ck_digest_buckets_status"),
    )
    op.create_index("ix_digest_buckets_id", "digest_buckets", ["id"])
    op.create_index("ix_digest_buckets_due", "digest_buckets", ["status", "scheduled_for"])
    op.create_index("ix_digest_buckets_customer", "digest_buckets", ["customer_id", "status", "window_end"])

    op.create_table(
        "digest_bucket_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bucket_id", sa.Integer(), sa.ForeignKey("digest_buckets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint("bucket_id", "seq", name="uq_digest_bucket_event_seq"),
    )
    op.create_index("ix_digest_bucket_events_id", "digest_bucket_events", ["id"])
    op.create_index("ix_digest_bucket_events_bucket_id", "digest_bucket_events", ["bucket_id"])

    op.create_table(
        "notification_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("bucket_id", sa.Integer(), sa.ForeignKey("digest_buckets.id", ondelete="SET NULL"), nullable=True),
        sa.Column("notification_type", sa.String(length=50), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=True),
        sa.Column("recipient", sa.String(length=255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint("bucket_id", name="uq_notification_deliveries_bucket_id"),
        sa.CheckConstraint("status IN ('sent', 'failed', 'suppressed')", name="ck_notification_deliveries_status"),
    )
    op.create_index("ix_notification_deliveries_id", "notification_deliveries", ["id"])
    op.create_index("ix_notification_deliveries_customer_id", "notification_deliveries", ["customer_id"])
    op.create_index("ix_notification_deliveries_user_id", "notification_deliveries", ["user_id"])
    op.create_index("ix_notification_deliveries_notification_type", "notification_deliveries", ["notification_type"])
    op.create_index("ix_notification_deliveries_status", "notification_deliveries", ["status"])
    op.create_index("ix_notification_deliveries_sent_at", "notification_deliveries", ["sent_at"])


def downgrade() -> None:
    op.drop_index("ix_notification_deliveries_sent_at", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_status", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_notification_type", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_user_id", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_customer_id", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_id", table_name="notification_deliveries")
    op.drop_table("notification_deliveries")

    op.drop_index("ix_digest_bucket_events_bucket_id", table_name="digest_bucket_events")
    op.drop_index("ix_digest_bucket_events_id", table_name="digest_bucket_events")
    op.drop_table("digest_bucket_events")

    op.drop_index("ix_digest_buckets_customer", table_name="digest_buckets")
    op.drop_index("ix_digest_buckets_due", table_name="digest_buckets")
    op.drop_index("ix_digest_buckets_id", table_name="digest_buckets")
    op.drop_table("digest_buckets")
