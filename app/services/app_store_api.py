"""
App Store Server API
====================

Thin async wrapper around ``AsyncAppStoreServerAPIClient``.

Used for:
- Reading a subscription's transaction history (manual sync / status)
- Asking Apple to send a TEST notification and checking its delivery

Library ``APIException`` failures are raised as ``PlatformError``. No
retries beyond what the library does.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from appstoreserverlibrary.api_client import APIException, AsyncAppStoreServerAPIClient
from appstoreserverlibrary.models.Environment import Environment
from appstoreserverlibrary.models.TransactionHistoryRequest import (
    Order,
    ProductType,
    TransactionHistoryRequest,
)

from app.config import Settings
from app.core.errors import PlatformError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TestNotificationStatus:
    signed_payload: Optional[str] = None
    send_attempts: list[dict] = field(default_factory=list)


class AppStoreAPI:
    """App Store Server API calls used by this service."""

    def __init__(self, client: AsyncAppStoreServerAPIClient):
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppStoreAPI":
        """Build a client signed with the configured In-App Purchase key."""
        client = AsyncAppStoreServerAPIClient(
            signing_key=settings.APPLE_PRIVATE_KEY.replace("\\n", "\n").encode("utf-8"),
            key_id=settings.APPLE_KEY_ID,
            issuer_id=settings.APPLE_ISSUER_ID,
            bundle_id=settings.APPLE_BUNDLE_ID,
            environment=Environment(settings.APPLE_ENVIRONMENT),
        )
        logger.info("App Store Server API client initialised (%s)", settings.APPLE_ENVIRONMENT)
        return cls(client)

    async def close(self) -> None:
        await self._client.async_close()
        logger.info("App Store Server API client closed")

    async def get_latest_signed_transaction(self, original_transaction_id: str) -> Optional[str]:
        """
        Newest signed auto-renewable, non-revoked transaction for a subscription.

        Returns:
            The JWS transaction, or None when the history is empty.

        Raises:
            PlatformError: If the API call fails
        """
        request = TransactionHistoryRequest(
            sort=Order.DESCENDING,
            revoked=False,
            productTypes=[ProductType.AUTO_RENEWABLE],
        )
        try:
            response = await self._client.get_transaction_history(
                original_transaction_id, None, request
            )
        except APIException as e:
            raise self._platform_error("get transaction history", e) from e

        signed_transactions = response.signedTransactions or []
        logger.info(
            "Transaction history for %s: %d transaction(s)",
            original_transaction_id,
            len(signed_transactions),
        )
        return signed_transactions[0] if signed_transactions else None

    async def request_test_notification(self) -> str:
        """Ask Apple to send a TEST notification; returns its token."""
        try:
            response = await self._client.request_test_notification()
        except APIException as e:
            raise self._platform_error("request test notification", e) from e

        if not response.testNotificationToken:
            raise PlatformError("Apple returned no test notification token")

        logger.info("Test notification requested: token=%s", response.testNotificationToken)
        return response.testNotificationToken

    async def get_test_notification_status(self, token: str) -> TestNotificationStatus:
        """Delivery attempts Apple made for a TEST notification."""
        try:
            response = await self._client.get_test_notification_status(token)
        except APIException as e:
            raise self._platform_error("get test notification status", e) from e

        attempts = []
        for attempt in response.sendAttempts or []:
            attempts.append({
                "attemptDate": attempt.attemptDate,
                "sendAttemptResult": (
                    attempt.rawSendAttemptResult
                    or getattr(attempt.sendAttemptResult, "value", None)
                ),
            })
        return TestNotificationStatus(
            signed_payload=response.signedPayload,
            send_attempts=attempts,
        )

    @staticmethod
    def _platform_error(action: str, e: APIException) -> PlatformError:
        logger.error(
            "App Store API failed to %s: http_status=%s api_error=%s message=%s",
            action,
            e.http_status_code,
            e.raw_api_error,
            e.error_message,
        )
        return PlatformError(
            f"App Store API failed to {action}",
            http_status=e.http_status_code,
            api_error=e.raw_api_error,
            cause=e,
        )
