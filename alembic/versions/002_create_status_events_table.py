"""create status_events table

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, JSONB, UUID

# revision identifiers, used by Alembic
revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()

    ENUM("webhook", "poll", name="eventsource").create(bind, checkfirst=True)
    ENUM(
        "applied", "duplicate", "stale", "terminal_conflict", "unknown_status",
        "upstream_error", "not_found", "order_not_found", "invalid_payload",
        "processing_error",
        name="eventreason",
    ).create(bind, checkfirst=True)

    op.create_table(
        "status_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "order_id",
            UUID(as_uuid=True),
            sa.ForeignKey("orders.id"),
            nullable=True,
        ),
        sa.Column("provider", ENUM(name="provider", create_type=False), nullable=False),
        sa.Column("provider_order_id", sa.String(128), nullable=True),
        sa.Column("source", ENUM(name="eventsource", create_type=False), nullable=False),
        sa.Column("raw_status", sa.String(64), nullable=True),
        sa.Column("canonical_status", ENUM(name="orderstatus", create_type=False), nullable=True),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("applied", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("reason", ENUM(name="eventreason", create_type=False), nullable=False),
        sa.Column("dedupe_key", sa.String(256), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempt_number", sa.Integer(), nullable=True),
        sa.Column("receipt_id", sa.String(128), nullable=True),
        sa.Column("payload", JSONB(), nullable=True),
        sa.Column(
            "replay_of",
            UUID(as_uuid=True),
            sa.ForeignKey("status_events.id"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    op.create_index(
        "ix_status_events_order_observed",
        "status_events",
        ["order_id", "observed_at"],
    )
    op.create_index(
        "ix_status_events_dedupe_applied",
        "status_events",
        ["dedupe_key", "applied"],
    )
    op.create_index("ix_status_events_replay_of", "status_events", ["replay_of"])


def downgrade() -> None:
    op.drop_index("ix_status_events_replay_of", table_name="status_events")
    op.drop_index("ix_status_events_dedupe_applied", table_name="status_events")
    op.drop_index("ix_status_events_order_observed", table_name="status_events")
    op.drop_table("status_events")
    sa.Enum(name="eventreason").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="eventsource").drop(op.get_bind(), checkfirst=True)
