"""One tenant preference row per customer; idempotency keys for queued dispatch

Revision ID: 0003_dispatch_idempotency
Revises: 0002_sms_numbers
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0003_dispatch_idempotency"
down_revision = "0002_sms_numbers"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "uq_notification_preference_tenant",
        "notification_preferences",
        ["customer_id"],
        unique=True,
        sqlite_where=sa.text("user_id IS NULL"),
        postgresql_where=sa.text("user_id IS NULL"),
    )

    op.add_column("notification_deliveries", sa.Column("idempotency_key", sa.String(length=200), nullable=True))
    op.create_index(
        "ix_notification_deliveries_idempotency_key",
        "notification_deliveries",
        ["idempotency_key"],
        unique=True,
    )

    op.add_column("digest_bucket_events", sa.Column("idempotency_key", sa.String(length=200), nullable=True))
    op.create_index(
        "ix_digest_bucket_events_idempotency_key",
        "digest_bucket_events",
        ["idempotency_key"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("ix_digest_bucket_events_idempotency_key", table_name="digest_bucket_events")
    op.drop_column("digest_bucket_events", "idempotency_key")
    op.drop_index("ix_notification_deliveries_idempotency_key", table_name="notification_deliveries")
    op.drop_column("notification_deliveries", "idempotency_key")
    op.drop_index("uq_notification_preference_tenant", table_name="notification_preferences")
