"""
App Store Schemas
=================

Decoded, signature-verified App Store payloads.

These models are only ever produced by ``SignatureVerifier``; nothing in
the request path builds them from unverified client input.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


# ─── Notification Types ──────────────────────────────────────────────────────


class NotificationType(str, Enum):
    """App Store Server Notifications V2 ``notificationType`` values."""

    SUBSCRIBED = "SUBSCRIBED"
    DID_RENEW = "DID_RENEW"
    EXPIRED = "EXPIRED"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    REFUND = "REFUND"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
    DID_CHANGE_RENEWAL_PREF = "DID_CHANGE_RENEWAL_PREF"
    OFFER_REDEEMED = "OFFER_REDEEMED"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    PRICE_INCREASE = "PRICE_INCREASE"
    REFUND_DECLINED = "REFUND_DECLINED"
    REFUND_REVERSED = "REFUND_REVERSED"
    CONSUMPTION_REQUEST = "CONSUMPTION_REQUEST"
    RENEWAL_EXTENDED = "RENEWAL_EXTENDED"
    RENEWAL_EXTENSION = "RENEWAL_EXTENSION"
    REVOKE = "REVOKE"
    EXTERNAL_PURCHASE_TOKEN = "EXTERNAL_PURCHASE_TOKEN"
    ONE_TIME_CHARGE = "ONE_TIME_CHARGE"
    TEST = "TEST"
    # Anything Apple adds after this list was written
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "NotificationType":
        """Map a raw notificationType string to a member, UNKNOWN if unrecognised."""
        if not raw:
            return cls.UNKNOWN
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


# ─── Decoded Payloads ────────────────────────────────────────────────────────


class Transaction(BaseModel):
    """A verified JWS transaction (JWSTransactionDecodedPayload)."""

    model_config = ConfigDict(frozen=True)

    original_transaction_id: str
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    purchase_date: Optional[datetime] = None
    expires_date: Optional[datetime] = None
    app_account_token: Optional[str] = None
    # Milliunits of the currency, as Apple reports it
    price: Optional[int] = None
    currency: Optional[str] = None
    environment: Optional[str] = None
    bundle_id: Optional[str] = None
    signed_date: Optional[datetime] = None

    @property
    def record_transaction_id(self) -> str:
        """Renewal-specific id when present, the original id otherwise."""
        return self.transaction_id or self.original_transaction_id


class RenewalInfo(BaseModel):
    """A verified JWS renewal info (JWSRenewalInfoDecodedPayload)."""

    model_config = ConfigDict(frozen=True)

    original_transaction_id: Optional[str] = None
    auto_renew_enabled: Optional[bool] = None
    auto_renew_product_id: Optional[str] = None
    expiration_intent: Optional[int] = None
    signed_date: Optional[datetime] = None


class WebhookNotification(BaseModel):
    """A verified App Store Server Notification V2 envelope."""

    model_config = ConfigDict(frozen=True)

    notification_type: NotificationType
    raw_notification_type: Optional[str] = None
    subtype: Optional[str] = None
    notification_uuid: Optional[str] = None
    signed_transaction_info: Optional[str] = None
    signed_renewal_info: Optional[str] = None
    environment: Optional[str] = None
    bundle_id: Optional[str] = None
    version: Optional[str] = None
    signed_date: Optional[datetime] = None
