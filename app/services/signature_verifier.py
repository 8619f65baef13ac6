"""
Signature Verifier
==================

Verifies and decodes App Store JWS payloads.

Wraps ``appstoreserverlibrary``'s ``SignedDataVerifier``, which checks the
x5c chain against the pinned Apple roots, the ES256 signature, the bundle
id and the environment. On top of that this module rejects:
- transactions without an originalTransactionId
- payloads whose signedDate is further in the future than the allowed skew

A failed verification always raises ``SignatureInvalidError``; it is never
reported as an inactive subscription.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from appstoreserverlibrary.models.Environment import Environment
from appstoreserverlibrary.signed_data_verifier import (
    SignedDataVerifier,
    VerificationException,
)

from app.config import Settings
from app.core.errors import SignatureInvalidError
from app.schemas.app_store import (
    NotificationType,
    RenewalInfo,
    Transaction,
    WebhookNotification,
)
from app.utils.helpers import datetime_from_ms, utc_now

logger = logging.getLogger(__name__)

# Malformed-but-signed payloads surface as these from the library's model parsing
_DECODE_ERRORS = (VerificationException, ValueError, KeyError, TypeError)


def _enum_value(value: Any) -> Optional[str]:
    """Library fields are enums when recognised; take the plain string."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def load_root_certificates(paths: list[str]) -> list[bytes]:
    """Read the pinned Apple root certificates (DER) from disk."""
    certificates = []
    for path in paths:
        certificates.append(Path(path).read_bytes())
    if not certificates:
        raise ValueError("At least one Apple root certificate path must be configured")
    return certificates


class SignatureVerifier:
    """Decodes signed App Store data into verified payload models."""

    def __init__(
        self,
        verifier: SignedDataVerifier,
        signed_date_skew: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._verifier = verifier
        self._signed_date_skew = signed_date_skew
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "SignatureVerifier":
        """Build a verifier pinned to the configured roots, bundle and environment."""
        root_certificates = load_root_certificates(settings.apple_root_certificate_paths)
        environment = Environment(settings.APPLE_ENVIRONMENT)

        verifier = SignedDataVerifier(
            root_certificates=root_certificates,
            enable_online_checks=settings.APPLE_ENABLE_ONLINE_CHECKS,
            environment=environment,
            bundle_id=settings.APPLE_BUNDLE_ID,
            app_apple_id=settings.APPLE_APP_APPLE_ID,
        )
        logger.info(
            "Signature verifier initialised (environment=%s, roots=%d, online_checks=%s)",
            environment.value,
            len(root_certificates),
            settings.APPLE_ENABLE_ONLINE_CHECKS,
        )
        return cls(
            verifier,
            signed_date_skew=timedelta(seconds=settings.APPLE_SIGNED_DATE_SKEW_SECONDS),
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def decode_transaction(self, token: str) -> Transaction:
        """
        Verify and decode a signed transaction (JWS).

        Raises:
            SignatureInvalidError: If verification fails or the payload is unusable
        """
        decoded = await self._run(
            self._verifier.verify_and_decode_signed_transaction, token, "transaction"
        )

        original_transaction_id = getattr(decoded, "originalTransactionId", None)
        if not original_transaction_id:
            raise SignatureInvalidError("Signed transaction has no originalTransactionId")

        signed_date = datetime_from_ms(getattr(decoded, "signedDate", None))
        self._check_signed_date(signed_date, "transaction")

        return Transaction(
            original_transaction_id=str(original_transaction_id),
            transaction_id=_optional_str(getattr(decoded, "transactionId", None)),
            product_id=getattr(decoded, "productId", None),
            purchase_date=datetime_from_ms(getattr(decoded, "purchaseDate", None)),
            expires_date=datetime_from_ms(getattr(decoded, "expiresDate", None)),
            app_account_token=_optional_str(getattr(decoded, "appAccountToken", None)),
            price=getattr(decoded, "price", None),
            currency=getattr(decoded, "currency", None),
            environment=getattr(decoded, "rawEnvironment", None)
            or _enum_value(getattr(decoded, "environment", None)),
            bundle_id=getattr(decoded, "bundleId", None),
            signed_date=signed_date,
        )

    async def decode_notification(self, signed_payload: str) -> WebhookNotification:
        """
        Verify and decode an App Store Server Notification V2 payload.

        Raises:
            SignatureInvalidError: If verification fails or the payload is unusable
        """
        decoded = await self._run(
            self._verifier.verify_and_decode_notification, signed_payload, "notification"
        )

        signed_date = datetime_from_ms(getattr(decoded, "signedDate", None))
        self._check_signed_date(signed_date, "notification")

        raw_type = getattr(decoded, "rawNotificationType", None) or _enum_value(
            getattr(decoded, "notificationType", None)
        )
        data = getattr(decoded, "data", None)

        return WebhookNotification(
            notification_type=NotificationType.parse(raw_type),
            raw_notification_type=raw_type,
            subtype=getattr(decoded, "rawSubtype", None)
            or _enum_value(getattr(decoded, "subtype", None)),
            notification_uuid=getattr(decoded, "notificationUUID", None),
            signed_transaction_info=getattr(data, "signedTransactionInfo", None),
            signed_renewal_info=getattr(data, "signedRenewalInfo", None),
            environment=(getattr(data, "rawEnvironment", None)
                         or _enum_value(getattr(data, "environment", None))),
            bundle_id=getattr(data, "bundleId", None),
            version=getattr(decoded, "version", None),
            signed_date=signed_date,
        )

    async def decode_renewal_info(self, token: str) -> RenewalInfo:
        """
        Verify and decode signed renewal info (JWS).

        Raises:
            SignatureInvalidError: If verification fails
        """
        decoded = await self._run(
            self._verifier.verify_and_decode_renewal_info, token, "renewal info"
        )

        signed_date = datetime_from_ms(getattr(decoded, "signedDate", None))
        self._check_signed_date(signed_date, "renewal info")

        auto_renew_status = getattr(decoded, "rawAutoRenewStatus", None)
        if auto_renew_status is None:
            auto_renew_status = _enum_value(getattr(decoded, "autoRenewStatus", None))

        expiration_intent = getattr(decoded, "rawExpirationIntent", None)
        if expiration_intent is None:
            expiration_intent = _enum_value(getattr(decoded, "expirationIntent", None))

        return RenewalInfo(
            original_transaction_id=_optional_str(getattr(decoded, "originalTransactionId", None)),
            auto_renew_enabled=None if auto_renew_status is None else int(auto_renew_status) == 1,
            auto_renew_product_id=getattr(decoded, "autoRenewProductId", None),
            expiration_intent=None if expiration_intent is None else int(expiration_intent),
            signed_date=signed_date,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _run(self, func: Callable[[str], Any], token: str, what: str) -> Any:
        """Run a blocking library verification in a worker thread."""
        if not token:
            raise SignatureInvalidError(f"Empty signed {what}")
        try:
            return await asyncio.to_thread(func, token)
        except VerificationException as e:
            logger.warning("Signed %s failed verification: status=%s", what, e.status)
            raise SignatureInvalidError(f"Signed {what} failed verification", cause=e) from e
        except _DECODE_ERRORS as e:
            logger.warning("Signed %s could not be decoded: %s", what, e)
            raise SignatureInvalidError(f"Signed {what} could not be decoded", cause=e) from e

    def _check_signed_date(self, signed_date: Optional[datetime], what: str) -> None:
        if signed_date is None:
            return
        limit = self._clock() + self._signed_date_skew
        if signed_date > limit:
            logger.warning(
                "Signed %s dated in the future: signed_date=%s limit=%s",
                what,
                signed_date.isoformat(),
                limit.isoformat(),
            )
            raise SignatureInvalidError(f"Signed {what} is dated in the future")


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)
