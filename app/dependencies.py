"""
Common Dependencies
===================

Shared dependencies used across the application.

Process-wide singletons (signature verifier, App Store API client) are
built once through ``lru_cache`` factories, the same way settings are.
Per-request services are built around the request's database session.
Tests replace any of these through ``app.dependency_overrides``.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import AuthenticationError
from app.core.security import API_KEY_HEADER, verify_api_key
from app.db.session import get_db
from app.services.app_store_api import AppStoreAPI
from app.services.entitlement_store import EntitlementStore
from app.services.notification_processor import NotificationProcessor
from app.services.premium_resolver import PremiumResolver
from app.services.receipt_validator import ReceiptValidator
from app.services.reconciliation import SubscriptionReconciler
from app.services.signature_verifier import SignatureVerifier

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]


# =============================================================================
# Authentication
# =============================================================================

async def require_api_key(
    x_api_key: Annotated[Optional[str], Header(alias=API_KEY_HEADER)] = None,
) -> None:
    """Reject the request unless it carries the shared API key."""
    if not verify_api_key(x_api_key):
        logger.warning("Rejected request with missing or invalid API key")
        raise AuthenticationError()


# =============================================================================
# Process-wide singletons
# =============================================================================

@lru_cache
def get_signature_verifier() -> SignatureVerifier:
    """Signature verifier pinned to the configured Apple roots."""
    return SignatureVerifier.from_settings(settings)


@lru_cache
def get_app_store_api() -> AppStoreAPI:
    """App Store Server API client."""
    return AppStoreAPI.from_settings(settings)


Verifier = Annotated[SignatureVerifier, Depends(get_signature_verifier)]
AppStoreClient = Annotated[AppStoreAPI, Depends(get_app_store_api)]


# =============================================================================
# Per-request services
# =============================================================================

def get_entitlement_store(db: DBSession) -> EntitlementStore:
    return EntitlementStore(db)


Store = Annotated[EntitlementStore, Depends(get_entitlement_store)]


def get_receipt_validator(verifier: Verifier, store: Store) -> ReceiptValidator:
    return ReceiptValidator(verifier, store)


def get_notification_processor(verifier: Verifier, store: Store) -> NotificationProcessor:
    return NotificationProcessor(verifier, store)


def get_premium_resolver(store: Store) -> PremiumResolver:
    return PremiumResolver(store)


def get_reconciler(
    api: AppStoreClient,
    verifier: Verifier,
    store: Store,
) -> SubscriptionReconciler:
    return SubscriptionReconciler(api, verifier, store)
