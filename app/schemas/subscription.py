"""
Subscription Schemas
====================

Pydantic schemas for subscription and webhook endpoints.

The mobile client speaks camelCase JSON; fields are declared snake_case
and aliased.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── Receipt Validation ──────────────────────────────────────────────────────


class ValidateReceiptRequest(CamelModel):
    """Request schema for receipt validation."""

    purchase_token: str = Field(min_length=1, description="Signed JWS transaction from StoreKit 2")
    user_id: str = Field(min_length=1, max_length=64)
    product_id: str = Field(min_length=1)
    transaction_id: Optional[str] = None
    environment: Optional[Literal["Sandbox", "Production"]] = None


class ValidateReceiptResponse(CamelModel):
    """Response schema for receipt validation."""

    success: bool
    subscription_active: bool
    transaction_id: Optional[str] = None
    expires_date: Optional[datetime] = None
    error: Optional[str] = None


# ─── Entitlement Reads ───────────────────────────────────────────────────────


class PremiumData(CamelModel):
    """Premium access decision for a user."""

    is_premium: bool
    reason: str


class PremiumResponse(CamelModel):
    """Response schema for the premium check."""

    success: bool = True
    data: PremiumData


class SubscriptionStatusData(CamelModel):
    """Stored entitlement plus the App Store's current view."""

    is_premium: bool
    reason: str
    subscription_active: bool
    expires_date: Optional[datetime] = None
    transaction_id: Optional[str] = None
    platform_error: Optional[str] = None


class SubscriptionStatusResponse(CamelModel):
    """Response schema for subscription status."""

    success: bool = True
    data: SubscriptionStatusData


class SubscriptionRecordOut(CamelModel):
    """One stored subscription record."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: int
    product_id: str
    transaction_id: str
    environment: str
    purchased_at: datetime
    expired: bool
    created_at: Optional[datetime] = None


class SubscriptionHistoryData(CamelModel):
    subscriptions: list[SubscriptionRecordOut]


class SubscriptionHistoryResponse(CamelModel):
    """Response schema for subscription history."""

    success: bool = True
    data: SubscriptionHistoryData


class SyncData(CamelModel):
    subscription_active: bool
    expires_date: Optional[datetime] = None
    message: str = "Subscription status synced successfully"


class SyncResponse(CamelModel):
    """Response schema for a manual platform sync."""

    success: bool = True
    data: SyncData


# ─── Webhooks ────────────────────────────────────────────────────────────────


class AppleWebhookEnvelope(CamelModel):
    """Body Apple POSTs for App Store Server Notifications V2."""

    signed_payload: str = Field(min_length=1)


class WebhookAck(BaseModel):
    """Acknowledgement returned to Apple."""

    success: bool = True
    message: str


class TestNotificationData(CamelModel):
    test_notification_token: str


class TestNotificationResponse(CamelModel):
    success: bool = True
    data: TestNotificationData


class TestNotificationStatusData(CamelModel):
    signed_payload: Optional[str] = None
    send_attempts: list[dict] = Field(default_factory=list)


class TestNotificationStatusResponse(CamelModel):
    success: bool = True
    data: TestNotificationStatusData
