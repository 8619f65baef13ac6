"""
Premium Resolver
================

Answers "does this user have premium access?" from the stored profile.

Read-only and never served from cache: a one-time unlock wins over a
subscription, and a missing profile is reported rather than guessed.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.core.errors import EntitlementErrorKind, StoreError
from app.services.entitlement_store import EntitlementStore

logger = logging.getLogger(__name__)


class PremiumReason(str, Enum):
    ONE_TIME_UNLOCK = "one_time_unlock"
    ACTIVE_SUBSCRIPTION = "active_subscription"
    NONE = "none"
    PROFILE_NOT_FOUND = "profile_not_found"


@dataclass(frozen=True)
class PremiumStatus:
    premium: bool
    reason: PremiumReason
    error: Optional[EntitlementErrorKind] = None


class PremiumResolver:
    """Resolves premium access for a user."""

    def __init__(self, store: EntitlementStore):
        self.store = store

    async def is_premium(self, user_id: str) -> PremiumStatus:
        try:
            profile = await self.store.get_profile(user_id)
        except StoreError:
            logger.error("Premium check for user %s failed: store unavailable", user_id)
            return PremiumStatus(
                premium=False,
                reason=PremiumReason.NONE,
                error=EntitlementErrorKind.STORE_ERROR,
            )

        if profile is None:
            return PremiumStatus(premium=False, reason=PremiumReason.PROFILE_NOT_FOUND)
        if profile.one_time_unlock:
            return PremiumStatus(premium=True, reason=PremiumReason.ONE_TIME_UNLOCK)
        if profile.subscribed:
            return PremiumStatus(premium=True, reason=PremiumReason.ACTIVE_SUBSCRIPTION)
        return PremiumStatus(premium=False, reason=PremiumReason.NONE)
