"""create orders table

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, UUID

# revision identifiers, used by Alembic
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()

    ENUM("paycrest", "pretium", name="provider").create(bind, checkfirst=True)
    ENUM(
        "initiated", "pending", "validated", "settled",
        "refunded", "expired", "failed", "cancelled", "unknown",
        name="orderstatus",
    ).create(bind, checkfirst=True)
    ENUM("KES", "GHS", "NGN", "UGX", name="localcurrency").create(bind, checkfirst=True)

    op.create_table(
        "orders",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", ENUM(name="provider", create_type=False), nullable=False),
        sa.Column("provider_order_id", sa.String(128), nullable=False),
        sa.Column("source_amount", sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column("local_amount", sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column("local_currency", ENUM(name="localcurrency", create_type=False), nullable=False),
        sa.Column(
            "fee_amount",
            sa.Numeric(precision=18, scale=2),
            server_default="0",
            nullable=False,
        ),
        sa.Column(
            "fee_rate",
            sa.Numeric(precision=6, scale=4),
            server_default="0",
            nullable=False,
        ),
        sa.Column("exchange_rate", sa.Numeric(precision=18, scale=6), nullable=True),
        sa.Column("destination_kind", sa.String(16), nullable=False),
        sa.Column("destination", sa.Text(), nullable=False),
        sa.Column("account_name", sa.String(200), nullable=True),
        sa.Column("receive_address", sa.String(128), nullable=True),
        sa.Column("return_address", sa.String(128), nullable=True),
        sa.Column("transaction_hash", sa.String(128), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "canonical_status",
            ENUM(name="orderstatus", create_type=False),
            server_default="initiated",
            nullable=False,
        ),
        sa.Column("provider_raw_status", sa.String(64), nullable=True),
        sa.Column("settlement_receipt_id", sa.String(128), nullable=True),
        sa.Column("poll_attempt_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("provider", "provider_order_id", name="uq_orders_provider_order"),
        sa.CheckConstraint("source_amount > 0", name="ck_orders_source_positive"),
        sa.CheckConstraint(
            "(canonical_status = 'settled') = (completed_at IS NOT NULL)",
            name="ck_orders_completed_iff_settled",
        ),
    )

    # Sweep query: open orders by provider, oldest poll first
    op.create_index(
        "ix_orders_status_polled",
        "orders",
        ["canonical_status", "last_polled_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_orders_status_polled", table_name="orders")
    op.drop_table("orders")
    sa.Enum(name="localcurrency").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="orderstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="provider").drop(op.get_bind(), checkfirst=True)
