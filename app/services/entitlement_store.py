"""
Entitlement Store
=================

Persistence for subscription records and profile entitlement flags.

Every mutation is one SQL statement committed on its own, so an abandoned
request leaves either nothing or a complete single-row write behind. The
unique constraint on ``subscriptions.transaction_id`` is the only
serialization point between concurrent writers.

Any SQLAlchemy failure is rolled back and raised as ``StoreError``.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import StoreError
from app.models.subscription import Profile, SubscriptionRecord
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class EntitlementStore:
    """Reads and writes entitlement state for one database session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # -------------------------------------------------------------------------
    # Subscription records
    # -------------------------------------------------------------------------

    def _insert(self):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite.insert(SubscriptionRecord)
        return postgresql.insert(SubscriptionRecord)

    async def upsert_subscription(
        self,
        user_id: str,
        product_id: str,
        transaction_id: str,
        environment: str,
        purchased_at: datetime,
    ) -> SubscriptionRecord:
        """
        Insert a subscription record or merge into the existing one.

        Keyed by ``transaction_id``. On conflict the product, environment
        and purchase date are refreshed and ``expired`` is cleared; the
        owning ``user_id`` of an existing row is never reassigned.

        Returns:
            The stored record after the write.
        """
        now = utc_now()
        stmt = self._insert().values(
            user_id=user_id,
            product_id=product_id,
            transaction_id=transaction_id,
            environment=environment,
            purchased_at=purchased_at,
            expired=False,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["transaction_id"],
            set_={
                "product_id": stmt.excluded.product_id,
                "environment": stmt.excluded.environment,
                "purchased_at": stmt.excluded.purchased_at,
                "expired": False,
                "updated_at": now,
            },
        ).returning(SubscriptionRecord)

        try:
            result = await self.db.execute(
                stmt, execution_options={"populate_existing": True}
            )
            record = result.scalar_one()
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback()
            logger.error("Upsert failed for transaction %s: %s", transaction_id, e)
            raise StoreError("Failed to upsert subscription record", cause=e) from e

        logger.info(
            "Subscription record stored: transaction=%s user=%s product=%s",
            transaction_id,
            record.user_id,
            product_id,
        )
        return record

    async def find_by_transaction_id(self, transaction_id: str) -> Optional[SubscriptionRecord]:
        """Get the record stored for a transaction id, if any."""
        try:
            result = await self.db.execute(
                select(SubscriptionRecord)
                .where(SubscriptionRecord.transaction_id == transaction_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            await self._rollback()
            raise StoreError("Failed to look up subscription record", cause=e) from e

    async def list_subscriptions(self, user_id: str) -> list[SubscriptionRecord]:
        """All records for a user, most recent first."""
        try:
            result = await self.db.execute(
                select(SubscriptionRecord)
                .where(SubscriptionRecord.user_id == user_id)
                .order_by(
                    SubscriptionRecord.created_at.desc(),
                    SubscriptionRecord.id.desc(),
                )
                .execution_options(populate_existing=True)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            await self._rollback()
            raise StoreError("Failed to list subscription records", cause=e) from e

    async def set_expired(self, transaction_id: str, expired: bool) -> bool:
        """Set the expired flag on a record. False when no such record."""
        stmt = (
            update(SubscriptionRecord)
            .where(SubscriptionRecord.transaction_id == transaction_id)
            .values(expired=expired, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return await self._execute_update(stmt, "set expired flag")

    async def advance_notification_watermark(
        self,
        transaction_id: str,
        signed_at: datetime,
    ) -> bool:
        """
        Record ``signed_at`` as the latest applied notification for a record.

        Atomic compare-and-set: the watermark only moves forward. A
        notification signed at the same instant as the watermark still
        applies, so a redelivery is processed again.

        Returns:
            False when the record already saw a later notification.
        """
        stmt = (
            update(SubscriptionRecord)
            .where(SubscriptionRecord.transaction_id == transaction_id)
            .where(
                or_(
                    SubscriptionRecord.last_notification_at.is_(None),
                    SubscriptionRecord.last_notification_at <= signed_at,
                )
            )
            .values(last_notification_at=signed_at)
            .execution_options(synchronize_session=False)
        )
        return await self._execute_update(stmt, "advance notification watermark")

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        """Get the entitlement columns of a user's profile."""
        try:
            result = await self.db.execute(
                select(Profile)
                .where(Profile.user_id == user_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            await self._rollback()
            raise StoreError("Failed to read profile", cause=e) from e

    async def set_subscribed(self, user_id: str, subscribed: bool) -> bool:
        """
        Set the profile's subscribed flag.

        Returns:
            False when the user has no profile row.
        """
        stmt = (
            update(Profile)
            .where(Profile.user_id == user_id)
            .values(subscribed=subscribed, subscribed_updated_time=utc_now())
            .execution_options(synchronize_session=False)
        )
        updated = await self._execute_update(stmt, "set subscribed")
        if updated:
            logger.info("Profile %s subscribed=%s", user_id, subscribed)
        else:
            logger.warning("No profile row for user %s; subscribed flag not written", user_id)
        return updated

    async def set_ever_purchased(self, user_id: str) -> bool:
        """
        Mark that the user has bought a subscription at some point.

        Write-once: the flag is never cleared. Returns False when the user
        has no profile row.
        """
        stmt = (
            update(Profile)
            .where(Profile.user_id == user_id)
            .values(has_purchased_subscription_before=True)
            .execution_options(synchronize_session=False)
        )
        updated = await self._execute_update(stmt, "set ever purchased")
        if not updated:
            logger.warning("No profile row for user %s; purchase history flag not written", user_id)
        return updated

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _execute_update(self, stmt, action: str) -> bool:
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback()
            logger.error("Store failed to %s: %s", action, e)
            raise StoreError(f"Failed to {action}", cause=e) from e
        return result.rowcount > 0

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.error("Rollback failed: %s", e)
