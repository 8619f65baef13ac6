"""
Subscription Reconciliation
===========================

Re-derives a user's subscription state from the App Store's transaction
history and, on sync, writes it back to the profile.

Recovers from missed or misordered notifications. Platform or signature
failures leave stored state untouched.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from app.config import settings
from app.core.errors import (
    EntitlementErrorKind,
    PlatformError,
    SignatureInvalidError,
    StoreError,
)
from app.services.app_store_api import AppStoreAPI
from app.services.entitlement_store import EntitlementStore
from app.services.receipt_validator import is_subscription_active
from app.services.signature_verifier import SignatureVerifier
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformStatus:
    active: bool
    expires_date: Optional[datetime] = None
    transaction_id: Optional[str] = None
    error: Optional[EntitlementErrorKind] = None


class SubscriptionReconciler:
    """Compares stored subscriptions against Apple's view."""

    def __init__(
        self,
        api: AppStoreAPI,
        verifier: SignatureVerifier,
        store: EntitlementStore,
        product_ids: Optional[frozenset[str]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.api = api
        self.verifier = verifier
        self.store = store
        self.product_ids = (
            product_ids if product_ids is not None else settings.subscription_product_ids
        )
        self.clock = clock

    async def fetch_status(self, user_id: str) -> PlatformStatus:
        """Current subscription status of the user's most recent record, per Apple."""
        try:
            records = await self.store.list_subscriptions(user_id)
        except StoreError:
            return PlatformStatus(active=False, error=EntitlementErrorKind.STORE_ERROR)

        if not records:
            return PlatformStatus(active=False)

        latest = records[0]
        try:
            signed = await self.api.get_latest_signed_transaction(latest.transaction_id)
        except PlatformError:
            return PlatformStatus(
                active=False,
                transaction_id=latest.transaction_id,
                error=EntitlementErrorKind.PLATFORM_ERROR,
            )

        if signed is None:
            logger.info("Apple has no transaction history for %s", latest.transaction_id)
            return PlatformStatus(active=False, transaction_id=latest.transaction_id)

        try:
            transaction = await self.verifier.decode_transaction(signed)
        except SignatureInvalidError:
            return PlatformStatus(
                active=False,
                transaction_id=latest.transaction_id,
                error=EntitlementErrorKind.SIGNATURE_INVALID,
            )

        return PlatformStatus(
            active=is_subscription_active(transaction, self.product_ids, self.clock()),
            expires_date=transaction.expires_date,
            transaction_id=transaction.original_transaction_id,
        )

    async def sync(self, user_id: str) -> PlatformStatus:
        """Fetch status from Apple and store it on the profile."""
        status = await self.fetch_status(user_id)
        if status.error is not None:
            logger.warning("Sync for user %s skipped: %s", user_id, status.error.value)
            return status

        try:
            written = await self.store.set_subscribed(user_id, status.active)
        except StoreError:
            return PlatformStatus(
                active=status.active,
                expires_date=status.expires_date,
                transaction_id=status.transaction_id,
                error=EntitlementErrorKind.STORE_ERROR,
            )

        if not written:
            return PlatformStatus(
                active=status.active,
                expires_date=status.expires_date,
                transaction_id=status.transaction_id,
                error=EntitlementErrorKind.DEGRADED_SUCCESS,
            )

        logger.info("Synced user %s with App Store: active=%s", user_id, status.active)
        return status
