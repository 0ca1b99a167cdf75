"""create wallet_assignments table

Revision ID: 003
Revises: 002
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, UUID

# revision identifiers, used by Alembic
revision = "003"
down_revision = "002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    ENUM("farcaster", "baseapp", "web", name="platform").create(op.get_bind(), checkfirst=True)

    op.create_table(
        "wallet_assignments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("platform", ENUM(name="platform", create_type=False), nullable=False),
        sa.Column("assigned_address", sa.String(128), nullable=True),
        sa.Column("external_provider_resource_id", sa.String(128), nullable=True),
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
        sa.UniqueConstraint("user_id", "platform", name="uq_wallet_assignments_user_platform"),
    )


def downgrade() -> None:
    op.drop_table("wallet_assignments")
    sa.Enum(name="platform").drop(op.get_bind(), checkfirst=True)
