"""
Subscription API Endpoints
==========================

Receipt validation, entitlement reads and manual sync with the App Store.

All endpoints require the ``X-API-Key`` header.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Path

from app.config import settings
from app.core.errors import (
    EntitlementErrorKind,
    ErrorCodes,
    ServiceUnavailableError,
    StoreError,
)
from app.dependencies import (
    Store,
    get_premium_resolver,
    get_receipt_validator,
    get_reconciler,
    require_api_key,
)
from app.schemas.common import ErrorResponse
from app.schemas.subscription import (
    PremiumData,
    PremiumResponse,
    SubscriptionHistoryData,
    SubscriptionHistoryResponse,
    SubscriptionRecordOut,
    SubscriptionStatusData,
    SubscriptionStatusResponse,
    SyncData,
    SyncResponse,
    ValidateReceiptRequest,
    ValidateReceiptResponse,
)
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager
from app.services.premium_resolver import PremiumResolver
from app.services.receipt_validator import ReceiptValidator
from app.services.reconciliation import SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter(
    dependencies=[Depends(require_api_key)],
    responses={401: {"model": ErrorResponse}},
)

UserId = Annotated[str, Path(min_length=1, max_length=64)]

# Client-facing messages per failure kind (development only)
VALIDATION_ERROR_MESSAGES = {
    EntitlementErrorKind.SIGNATURE_INVALID: "Purchase token failed verification",
    EntitlementErrorKind.OWNERSHIP_MISMATCH: "Purchase does not belong to this user",
    EntitlementErrorKind.STORE_ERROR: "Failed to record subscription",
    EntitlementErrorKind.DEGRADED_SUCCESS: "Subscription recorded but profile was not updated",
}
GENERIC_VALIDATION_ERROR = "Receipt validation failed"


def validation_error_message(kind: EntitlementErrorKind) -> str:
    """Production hides which check failed; logs keep the specific kind."""
    if settings.is_production:
        return GENERIC_VALIDATION_ERROR
    return VALIDATION_ERROR_MESSAGES.get(kind, GENERIC_VALIDATION_ERROR)


@router.post("/validate", response_model=ValidateReceiptResponse)
async def validate_receipt(
    request: ValidateReceiptRequest,
    validator: ReceiptValidator = Depends(get_receipt_validator),
) -> ValidateReceiptResponse:
    """
    Validate a StoreKit 2 signed transaction and grant the subscription.

    A degraded success (record stored, profile not updated) is reported as
    ``success: false`` with ``subscriptionActive: true``; retrying converges.
    """
    logger.info(
        "Receipt validation request received: user=%s product=%s",
        request.user_id,
        request.product_id,
    )

    result = await validator.validate(
        purchase_token=request.purchase_token,
        user_id=request.user_id,
        product_id=request.product_id,
        environment=request.environment,
        transaction_id=request.transaction_id,
    )

    if result.error is not None:
        logger.warning(
            "Receipt validation failed for user %s: %s", request.user_id, result.error.value
        )

    if result.active:
        await CacheInvalidator.on_entitlement_change(request.user_id)

    return ValidateReceiptResponse(
        success=result.success,
        subscription_active=result.active,
        transaction_id=result.transaction_id,
        expires_date=result.expires_date,
        error=validation_error_message(result.error) if result.error else None,
    )


@router.get("/premium/{user_id}", response_model=PremiumResponse)
async def premium_access(
    user_id: UserId,
    resolver: PremiumResolver = Depends(get_premium_resolver),
) -> PremiumResponse:
    """Whether the user has premium access (one-time unlock or subscription)."""
    status = await resolver.is_premium(user_id)
    if status.error is not None:
        raise ServiceUnavailableError(
            code=ErrorCodes.SUB_STATUS_UNAVAILABLE,
            message="Premium status is temporarily unavailable",
        )
    return PremiumResponse(
        data=PremiumData(is_premium=status.premium, reason=status.reason.value)
    )


@router.get("/status/{user_id}", response_model=SubscriptionStatusResponse)
async def subscription_status(
    user_id: UserId,
    resolver: PremiumResolver = Depends(get_premium_resolver),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> SubscriptionStatusResponse:
    """Stored premium status alongside Apple's current view of the subscription."""
    premium = await resolver.is_premium(user_id)
    if premium.error is not None:
        raise ServiceUnavailableError(
            code=ErrorCodes.SUB_STATUS_UNAVAILABLE,
            message="Subscription status is temporarily unavailable",
        )

    platform = await reconciler.fetch_status(user_id)

    return SubscriptionStatusResponse(
        data=SubscriptionStatusData(
            is_premium=premium.premium,
            reason=premium.reason.value,
            subscription_active=platform.active,
            expires_date=platform.expires_date,
            transaction_id=platform.transaction_id,
            platform_error=platform.error.value if platform.error else None,
        )
    )


@router.get("/history/{user_id}", response_model=SubscriptionHistoryResponse)
async def subscription_history(
    user_id: UserId,
    store: Store,
) -> SubscriptionHistoryResponse:
    """Stored subscription records for a user, most recent first."""
    cache_key = CacheKeys.subscription_history(user_id)
    cached = await CacheManager.get(cache_key)
    if cached is not None:
        records = [SubscriptionRecordOut.model_validate(item) for item in cached]
        return SubscriptionHistoryResponse(data=SubscriptionHistoryData(subscriptions=records))

    try:
        rows = await store.list_subscriptions(user_id)
    except StoreError:
        raise ServiceUnavailableError(
            code=ErrorCodes.SUB_HISTORY_UNAVAILABLE,
            message="Subscription history is temporarily unavailable",
        )

    records = [SubscriptionRecordOut.model_validate(row) for row in rows]
    await CacheManager.set(
        cache_key,
        [record.model_dump(mode="json", by_alias=True) for record in records],
        ttl=CacheManager.TTL_SHORT,
    )
    return SubscriptionHistoryResponse(data=SubscriptionHistoryData(subscriptions=records))


@router.post("/sync/{user_id}", response_model=SyncResponse)
async def sync_subscription(
    user_id: UserId,
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> SyncResponse:
    """Re-read the subscription from Apple and store the result on the profile."""
    logger.info("Manual subscription sync request: user=%s", user_id)

    status = await reconciler.sync(user_id)
    if status.error is not None:
        raise ServiceUnavailableError(
            code=ErrorCodes.SUB_SYNC_FAILED,
            message="Subscription sync failed",
            reason=status.error.value,
        )

    await CacheInvalidator.on_entitlement_change(user_id)
    return SyncResponse(
        data=SyncData(subscription_active=status.active, expires_date=status.expires_date)
    )
