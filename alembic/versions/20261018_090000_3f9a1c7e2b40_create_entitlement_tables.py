"""Create subscriptions and profiles entitlement tables

Revision ID: 3f9a1c7e2b40
Revises:
Create Date: 2026-10-18 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3f9a1c7e2b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # profiles: normally created by the user service; only the
    # entitlement columns are declared here.
    # ------------------------------------------------------------------
    op.create_table(
        "profiles",
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("subscribed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column(
            "has_purchased_subscription_before",
            sa.Boolean(),
            server_default=sa.false(),
            nullable=False,
        ),
        sa.Column("one_time_unlock", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("subscribed_updated_time", sa.DateTime(timezone=True), nullable=True),
        if_not_exists=True,
    )

    # ------------------------------------------------------------------
    # subscriptions: one row per App Store transaction id
    # ------------------------------------------------------------------
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("transaction_id", sa.String(length=64), nullable=False),
        sa.Column("environment", sa.String(length=16), nullable=False),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expired", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("last_notification_at", sa.DateTime(timezone=True), nullable=True),
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
        sa.UniqueConstraint("transaction_id", name="uq_subscriptions_transaction_id"),
        sa.CheckConstraint(
            "environment IN ('Sandbox', 'Production')",
            name="ck_subscriptions_environment",
        ),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "idx_subscriptions_user_created",
        "subscriptions",
        ["user_id", "created_at"],
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_subscriptions_user_created", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    # profiles is left in place: it belongs to the user service
