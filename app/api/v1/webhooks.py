"""
Webhooks API Endpoints
======================

Receives App Store Server Notifications V2.

Authentication:
    Apple signs every notification (JWS, x5c chain to Apple Root CA G3).
    The payload signature is the only authentication; no API key.

Responses:
    Apple retries any non-2xx delivery, so 200 is returned once the
    notification needs no further work (applied, no-op, stale, or not
    attributable to a user). Verification and store failures return 500
    so Apple redelivers.

Idempotency:
    Every entitlement write is keyed by transaction id, so redelivery is
    safe. Processed ``notificationUUID``s are also remembered in Redis to
    skip the work entirely; that cache is best-effort.
"""

import logging

from fastapi import APIRouter, Depends

from app.core.errors import (
    BadRequestError,
    EntitlementErrorKind,
    ErrorCodes,
    InternalServerError,
    PlatformError,
    ServiceUnavailableError,
)
from app.dependencies import (
    AppStoreClient,
    get_notification_processor,
    require_api_key,
)
from app.schemas.app_store import WebhookNotification
from app.schemas.common import BaseResponse
from app.schemas.subscription import (
    AppleWebhookEnvelope,
    TestNotificationData,
    TestNotificationResponse,
    TestNotificationStatusData,
    TestNotificationStatusResponse,
    WebhookAck,
)
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager
from app.services.notification_processor import (
    NotificationOutcome,
    NotificationProcessor,
)
from app.utils.helpers import format_datetime, utc_now

logger = logging.getLogger(__name__)

router = APIRouter()

# Errors Apple should redeliver for
_RETRYABLE = {
    EntitlementErrorKind.SIGNATURE_INVALID,
    EntitlementErrorKind.STORE_ERROR,
    EntitlementErrorKind.DEGRADED_SUCCESS,
}


async def _already_processed(notification: WebhookNotification) -> bool:
    uuid = notification.notification_uuid
    return bool(uuid) and await CacheManager.exists(CacheKeys.webhook_processed(uuid))


@router.post("/apple", response_model=WebhookAck)
async def apple_webhook(
    envelope: AppleWebhookEnvelope,
    processor: NotificationProcessor = Depends(get_notification_processor),
) -> WebhookAck:
    """
    Handle an App Store Server Notification V2.

    Configure this URL in App Store Connect as the production and/or
    sandbox server notification URL.
    """
    logger.info(
        "Apple webhook notification received (payload length=%d)",
        len(envelope.signed_payload),
    )

    result = await processor.handle(
        envelope.signed_payload, already_seen=_already_processed
    )
    notification_type = result.notification_type.value if result.notification_type else None

    # ── Redelivery short-circuit ──────────────────────────────────────────
    if result.outcome == NotificationOutcome.DUPLICATE:
        return WebhookAck(message="Notification already processed")

    if result.error == EntitlementErrorKind.MALFORMED_NOTIFICATION:
        raise BadRequestError(
            code=ErrorCodes.WEBHOOK_MALFORMED,
            message="Notification carries no signed transaction",
        )

    if result.error in _RETRYABLE:
        logger.error(
            "Failed to process Apple webhook %s: %s",
            notification_type,
            result.error.value,
        )
        raise InternalServerError(
            code=ErrorCodes.WEBHOOK_PROCESSING_FAILED,
            message="Failed to process webhook",
        )

    if result.error == EntitlementErrorKind.UNATTRIBUTED_TRANSACTION:
        return WebhookAck(message="Notification acknowledged; transaction not attributed")

    if result.notification_uuid:
        await CacheManager.set(
            CacheKeys.webhook_processed(result.notification_uuid),
            "1",
            ttl=CacheManager.TTL_DAY,
        )
    if result.outcome == NotificationOutcome.APPLIED and result.user_id:
        await CacheInvalidator.on_entitlement_change(result.user_id)

    logger.info(
        "Apple webhook processed: type=%s outcome=%s user=%s",
        notification_type,
        result.outcome.value,
        result.user_id,
    )
    return WebhookAck(message="Webhook processed successfully")


@router.get("/test", response_model=BaseResponse[dict])
async def webhook_liveness() -> BaseResponse[dict]:
    """Check that the webhook service is running."""
    return BaseResponse[dict](
        message="Webhook service is running",
        data={"timestamp": format_datetime(utc_now())},
    )


# =============================================================================
# App Store test notifications
# =============================================================================

@router.post(
    "/apple/test-notification",
    response_model=TestNotificationResponse,
    dependencies=[Depends(require_api_key)],
)
async def request_test_notification(api: AppStoreClient) -> TestNotificationResponse:
    """Ask Apple to send a TEST notification to the configured webhook URL."""
    try:
        token = await api.request_test_notification()
    except PlatformError:
        raise ServiceUnavailableError(
            code=ErrorCodes.WEBHOOK_TEST_FAILED,
            message="Failed to request test notification",
        )
    return TestNotificationResponse(data=TestNotificationData(test_notification_token=token))


@router.get(
    "/apple/test-notification/{token}",
    response_model=TestNotificationStatusResponse,
    dependencies=[Depends(require_api_key)],
)
async def test_notification_status(
    token: str,
    api: AppStoreClient,
) -> TestNotificationStatusResponse:
    """Delivery status of a previously requested TEST notification."""
    try:
        status = await api.get_test_notification_status(token)
    except PlatformError:
        raise ServiceUnavailableError(
            code=ErrorCodes.WEBHOOK_TEST_FAILED,
            message="Failed to get test notification status",
        )
    return TestNotificationStatusResponse(
        data=TestNotificationStatusData(
            signed_payload=status.signed_payload,
            send_attempts=status.send_attempts,
        )
    )
