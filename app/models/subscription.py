"""
Entitlement Models
==================

SQLAlchemy models for App Store subscription records and the
entitlement flags kept on user profiles.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    false,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin


class SubscriptionRecord(Base, TimestampMixin):
    """
    One App Store transaction recorded for a user.

    ``transaction_id`` is the idempotency key: every write for the same
    transaction merges into the existing row.
    """

    __tablename__ = "subscriptions"

    # SQLite only autoincrements an INTEGER primary key
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    product_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    transaction_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    environment: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
    )
    purchased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Maintained by App Store notifications
    expired: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default=false(),
        nullable=False,
    )
    # signedDate of the last notification applied (monotonic ordering only)
    last_notification_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_subscriptions_transaction_id"),
        CheckConstraint(
            "environment IN ('Sandbox', 'Production')",
            name="ck_subscriptions_environment",
        ),
        Index("idx_subscriptions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, "
            f"transaction_id={self.transaction_id}, expired={self.expired})>"
        )


class Profile(Base):
    """
    Entitlement columns of the user profile.

    The ``profiles`` table belongs to the user-management side of the
    app; only the columns this service reads or writes are mapped.
    """

    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    subscribed: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default=false(),
        nullable=False,
    )
    # Never reset once true
    has_purchased_subscription_before: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default=false(),
        nullable=False,
    )
    one_time_unlock: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default=false(),
        nullable=False,
    )
    subscribed_updated_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Profile(user_id={self.user_id}, subscribed={self.subscribed})>"
