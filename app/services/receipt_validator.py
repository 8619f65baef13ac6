"""
Receipt Validator
=================

Client-initiated purchase validation.

Flow:
1. Verify and decode the signed transaction the app received from StoreKit
2. Check the transaction was bought by the calling user (appAccountToken)
3. Decide whether it is an active subscription
4. If active, record it and flip the user's profile flags

Nothing is persisted when verification or the ownership check fails, or
when the subscription is not active.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from app.config import settings
from app.core.errors import (
    EntitlementErrorKind,
    SignatureInvalidError,
    StoreError,
)
from app.schemas.app_store import Transaction
from app.services.entitlement_store import EntitlementStore
from app.services.signature_verifier import SignatureVerifier
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a receipt validation."""

    active: bool
    transaction_id: Optional[str] = None
    expires_date: Optional[datetime] = None
    error: Optional[EntitlementErrorKind] = None

    @property
    def success(self) -> bool:
        return self.error is None


def is_subscription_active(
    transaction: Transaction,
    product_ids: frozenset[str],
    now: datetime,
) -> bool:
    """
    A configured subscription product with no expiry, or an expiry
    strictly after ``now``.
    """
    if transaction.product_id not in product_ids:
        return False
    if transaction.expires_date is None:
        return True
    return transaction.expires_date > now


class ReceiptValidator:
    """Validates purchases reported by the mobile client."""

    def __init__(
        self,
        verifier: SignatureVerifier,
        store: EntitlementStore,
        product_ids: Optional[frozenset[str]] = None,
        default_environment: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.verifier = verifier
        self.store = store
        self.product_ids = (
            product_ids if product_ids is not None else settings.subscription_product_ids
        )
        self.default_environment = default_environment or settings.APPLE_ENVIRONMENT
        self.clock = clock

    async def validate(
        self,
        purchase_token: str,
        user_id: str,
        product_id: str,
        environment: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> ValidationResult:
        """
        Validate a signed transaction for ``user_id``.

        Args:
            purchase_token: JWS transaction from StoreKit 2
            user_id: Caller's user id; must equal the transaction's appAccountToken
            product_id: Product the client believes it bought (informational)
            environment: Sandbox or Production, if the client knows
            transaction_id: Client-side transaction id (informational)

        Returns:
            ValidationResult; never raises for entitlement failures.
        """
        # Step 1: verify
        try:
            transaction = await self.verifier.decode_transaction(purchase_token)
        except SignatureInvalidError:
            logger.warning("Receipt validation rejected: invalid signature (user=%s)", user_id)
            return ValidationResult(active=False, error=EntitlementErrorKind.SIGNATURE_INVALID)

        # Step 2: ownership
        if transaction.app_account_token != user_id:
            logger.warning(
                "Receipt ownership mismatch: user=%s app_account_token=%s original_transaction=%s",
                user_id,
                transaction.app_account_token,
                transaction.original_transaction_id,
            )
            return ValidationResult(active=False, error=EntitlementErrorKind.OWNERSHIP_MISMATCH)

        if transaction_id and transaction_id not in (
            transaction.transaction_id,
            transaction.original_transaction_id,
        ):
            logger.info(
                "Client transaction id %s differs from signed transaction %s",
                transaction_id,
                transaction.original_transaction_id,
            )
        if transaction.product_id != product_id:
            logger.warning(
                "Client product %s differs from signed product %s; using signed value",
                product_id,
                transaction.product_id,
            )
        if environment and transaction.environment and environment != transaction.environment:
            logger.warning(
                "Client environment %s differs from signed environment %s; using signed value",
                environment,
                transaction.environment,
            )

        # Step 3: activity
        active = is_subscription_active(transaction, self.product_ids, self.clock())
        if not active:
            logger.info(
                "Receipt for user %s is not an active subscription (product=%s, expires=%s)",
                user_id,
                transaction.product_id,
                transaction.expires_date,
            )
            return ValidationResult(
                active=False,
                transaction_id=transaction.original_transaction_id,
                expires_date=transaction.expires_date,
            )

        # Step 4: persist
        try:
            await self.store.upsert_subscription(
                user_id=user_id,
                product_id=transaction.product_id,
                transaction_id=transaction.original_transaction_id,
                environment=transaction.environment or environment or self.default_environment,
                purchased_at=transaction.purchase_date or self.clock(),
            )
        except StoreError:
            logger.error(
                "Receipt validation failed to store transaction %s for user %s",
                transaction.original_transaction_id,
                user_id,
            )
            return ValidationResult(active=False, error=EntitlementErrorKind.STORE_ERROR)

        flags_written = True
        try:
            flags_written &= await self.store.set_subscribed(user_id, True)
            flags_written &= await self.store.set_ever_purchased(user_id)
        except StoreError:
            flags_written = False

        if not flags_written:
            logger.error(
                "Transaction %s stored but profile flags for user %s were not updated",
                transaction.original_transaction_id,
                user_id,
            )
            return ValidationResult(
                active=True,
                transaction_id=transaction.original_transaction_id,
                expires_date=transaction.expires_date,
                error=EntitlementErrorKind.DEGRADED_SUCCESS,
            )

        logger.info(
            "Subscription validated: user=%s transaction=%s expires=%s",
            user_id,
            transaction.original_transaction_id,
            transaction.expires_date,
        )
        return ValidationResult(
            active=True,
            transaction_id=transaction.original_transaction_id,
            expires_date=transaction.expires_date,
        )
