"""Add the shared SMS number pool and provider-owned numbers

Revision ID: 0002_sms_numbers
Revises: 0001_digest_buckets
Create Date: 2026-09-28
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_sms_numbers"
down_revision = "0001_digest_buckets"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "pool_numbers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("phone_number", sa.String(length=32), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False, server_default="fonecloud"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="unallocated"),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("allocated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("released_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("phone_number", name="uq_pool_numbers_phone_number"),
        sa.CheckConstraint(
            "status IN ('unallocated', 'allocated', 'released')",
            name="ck_pool_numbers_status",
        ),
    )
    op.create_index("ix_pool_numbers_id", "pool_numbers", ["id"])
    op.create_index("ix_pool_numbers_customer_id", "pool_numbers", ["customer_id"])

    op.create_table(
        "owned_numbers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False, server_default="twilio"),
        sa.Column("phone_number", sa.String(length=32), nullable=False),
        sa.Column("provider_sid", sa.String(length=64), nullable=True),
        sa.Column("friendly_name", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("released_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_owned_numbers_id", "owned_numbers", ["id"])
    op.create_index("ix_owned_numbers_customer_id", "owned_numbers", ["customer_id"])
    op.create_index("ix_owned_numbers_phone_number", "owned_numbers", ["phone_number"])


def downgrade() -> None:
    op.drop_index("ix_owned_numbers_phone_number", table_name="owned_numbers")
    op.drop_index("ix_owned_numbers_customer_id", table_name="owned_numbers")
    op.drop_index("ix_owned_numbers_id", table_name="owned_numbers")
    op.drop_table("owned_numbers")

    op.drop_index("ix_pool_numbers_customer_id", table_name="pool_numbers")
    op.drop_index("ix_pool_numbers_id", table_name="pool_numbers")
    op.drop_table("pool_numbers")
