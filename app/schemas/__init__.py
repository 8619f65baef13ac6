"""
Pydantic Schemas
================

Request/response schemas for API validation, plus the decoded App Store
payload models.
"""

from app.schemas.app_store import (
    NotificationType,
    RenewalInfo,
    Transaction,
    WebhookNotification,
)
from app.schemas.common import (
    BaseResponse,
    ErrorResponse,
)

__all__ = [
    "BaseResponse",
    "ErrorResponse",
    "NotificationType",
    "RenewalInfo",
    "Transaction",
    "WebhookNotification",
]
