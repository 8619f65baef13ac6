"""
Notification Processor
======================

Applies App Store Server Notifications V2 to stored entitlement state.

Handles:
- Envelope and transaction verification
- Attribution to a user through the stored original transaction
- Optional monotonic ordering by signedDate
- Dispatch by notification type (see ``_dispatch``)

Redelivered notifications are safe: every effect is an idempotent write
keyed by transaction id. Unless ``NOTIFICATION_ORDERING=monotonic``,
notifications are applied in delivery order, so a late EXPIRED can
override a newer DID_RENEW until the next event or a manual sync.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from app.config import settings
from app.core.errors import (
    EntitlementErrorKind,
    SignatureInvalidError,
    StoreError,
)
from app.models.subscription import SubscriptionRecord
from app.schemas.app_store import NotificationType, Transaction, WebhookNotification
from app.services.entitlement_store import EntitlementStore
from app.services.signature_verifier import SignatureVerifier
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

# One store write; returns False when it matched no row
Step = Callable[[], Awaitable[object]]

# Decides from the verified envelope whether the notification was already handled
SeenCheck = Callable[[WebhookNotification], Awaitable[bool]]


class NotificationOutcome(str, Enum):
    APPLIED = "APPLIED"
    NO_OP = "NO_OP"
    STALE = "STALE"
    DUPLICATE = "DUPLICATE"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of processing one notification."""

    outcome: NotificationOutcome
    notification_type: Optional[NotificationType] = None
    error: Optional[EntitlementErrorKind] = None
    user_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    notification_uuid: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class _Context:
    notification: WebhookNotification
    transaction: Transaction
    owner: SubscriptionRecord


class NotificationProcessor:
    """Decodes and applies App Store notifications."""

    def __init__(
        self,
        verifier: SignatureVerifier,
        store: EntitlementStore,
        ordering: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.verifier = verifier
        self.store = store
        self.ordering = ordering or settings.NOTIFICATION_ORDERING
        self.clock = clock

        self._dispatch: dict[NotificationType, Callable[[_Context], list[Step]]] = {
            NotificationType.SUBSCRIBED: self._on_subscribed,
            NotificationType.DID_RENEW: self._on_did_renew,
            NotificationType.EXPIRED: self._on_lapsed,
            NotificationType.DID_FAIL_TO_RENEW: self._on_lapsed,
            NotificationType.REFUND: self._on_lapsed,
        }

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def handle(
        self,
        signed_payload: str,
        already_seen: Optional[SeenCheck] = None,
    ) -> NotificationResult:
        """
        Verify a raw ``signedPayload`` and process it.

        Args:
            signed_payload: JWS envelope as posted by Apple
            already_seen: Optional redelivery check run on the verified
                envelope; when it returns True nothing is processed

        Returns:
            NotificationResult carrying the envelope's notificationUUID.
        """
        try:
            notification = await self.verifier.decode_notification(signed_payload)
        except SignatureInvalidError:
            logger.warning("Rejected App Store notification: envelope failed verification")
            return NotificationResult(
                outcome=NotificationOutcome.REJECTED,
                error=EntitlementErrorKind.SIGNATURE_INVALID,
            )

        if already_seen is not None and await already_seen(notification):
            logger.info(
                "Duplicate App Store notification %s, skipping",
                notification.notification_uuid,
            )
            return NotificationResult(
                outcome=NotificationOutcome.DUPLICATE,
                notification_type=notification.notification_type,
                notification_uuid=notification.notification_uuid,
            )

        result = await self.process(notification)
        return replace(result, notification_uuid=notification.notification_uuid)

    async def process(self, notification: WebhookNotification) -> NotificationResult:
        """Apply an already verified notification."""
        ntype = notification.notification_type
        logger.info(
            "Processing App Store notification %s (subtype=%s, uuid=%s)",
            notification.raw_notification_type or ntype.value,
            notification.subtype,
            notification.notification_uuid,
        )

        if ntype == NotificationType.TEST:
            logger.info("App Store TEST notification received")
            return NotificationResult(outcome=NotificationOutcome.NO_OP, notification_type=ntype)

        if not notification.signed_transaction_info:
            logger.warning("%s notification carries no signedTransactionInfo", ntype.value)
            return NotificationResult(
                outcome=NotificationOutcome.REJECTED,
                notification_type=ntype,
                error=EntitlementErrorKind.MALFORMED_NOTIFICATION,
            )

        try:
            transaction = await self.verifier.decode_transaction(
                notification.signed_transaction_info
            )
        except SignatureInvalidError:
            logger.warning("%s notification has an invalid signed transaction", ntype.value)
            return NotificationResult(
                outcome=NotificationOutcome.REJECTED,
                notification_type=ntype,
                error=EntitlementErrorKind.SIGNATURE_INVALID,
            )

        original_id = transaction.original_transaction_id

        try:
            owner = await self.store.find_by_transaction_id(original_id)
        except StoreError:
            return self._failure(ntype, EntitlementErrorKind.STORE_ERROR, original_id)

        if owner is None:
            # The purchase never went through /validate; nothing to attribute it to
            logger.warning(
                "%s notification for unknown original transaction %s; ignoring",
                ntype.value,
                original_id,
            )
            return self._failure(ntype, EntitlementErrorKind.UNATTRIBUTED_TRANSACTION, original_id)

        context = _Context(notification=notification, transaction=transaction, owner=owner)

        if self.ordering == "monotonic" and notification.signed_date is not None:
            try:
                advanced = await self.store.advance_notification_watermark(
                    original_id, notification.signed_date
                )
            except StoreError:
                return self._failure(
                    ntype, EntitlementErrorKind.STORE_ERROR, original_id, owner.user_id
                )
            if not advanced:
                logger.info(
                    "Skipping stale %s for transaction %s (signed %s)",
                    ntype.value,
                    original_id,
                    notification.signed_date.isoformat(),
                )
                return NotificationResult(
                    outcome=NotificationOutcome.STALE,
                    notification_type=ntype,
                    user_id=owner.user_id,
                    original_transaction_id=original_id,
                )

        handler = self._dispatch.get(ntype)
        if handler is None:
            if ntype == NotificationType.DID_CHANGE_RENEWAL_STATUS:
                await self._log_renewal_status(context)
            else:
                logger.info("No entitlement effect for %s; acknowledged", ntype.value)
            return NotificationResult(
                outcome=NotificationOutcome.NO_OP,
                notification_type=ntype,
                user_id=owner.user_id,
                original_transaction_id=original_id,
            )

        return await self._apply(ntype, context, handler(context))

    # -------------------------------------------------------------------------
    # Dispatch table entries
    # -------------------------------------------------------------------------

    def _on_subscribed(self, ctx: _Context) -> list[Step]:
        user_id = ctx.owner.user_id
        original_id = ctx.transaction.original_transaction_id
        return [
            lambda: self.store.set_subscribed(user_id, True),
            lambda: self.store.set_ever_purchased(user_id),
            lambda: self.store.set_expired(original_id, False),
            *self._mark_current_period(ctx, expired=False),
        ]

    def _on_did_renew(self, ctx: _Context) -> list[Step]:
        transaction = ctx.transaction
        owner = ctx.owner

        async def record_renewal() -> bool:
            await self.store.upsert_subscription(
                user_id=owner.user_id,
                product_id=transaction.product_id or owner.product_id,
                transaction_id=transaction.record_transaction_id,
                environment=(
                    transaction.environment
                    or ctx.notification.environment
                    or owner.environment
                ),
                purchased_at=transaction.purchase_date or self.clock(),
            )
            return True

        return [
            record_renewal,
            lambda: self.store.set_subscribed(owner.user_id, True),
        ]

    def _on_lapsed(self, ctx: _Context) -> list[Step]:
        """EXPIRED, DID_FAIL_TO_RENEW and REFUND all end the entitlement."""
        user_id = ctx.owner.user_id
        original_id = ctx.transaction.original_transaction_id
        return [
            lambda: self.store.set_subscribed(user_id, False),
            lambda: self.store.set_expired(original_id, True),
            *self._mark_current_period(ctx, expired=True),
        ]

    def _mark_current_period(self, ctx: _Context, expired: bool) -> list[Step]:
        """
        The signed transaction is the latest period; when a renewal row
        exists for it, its expired flag follows the original record.
        """
        record_id = ctx.transaction.record_transaction_id
        if record_id == ctx.transaction.original_transaction_id:
            return []

        async def mark() -> None:
            # A renewal that was never recorded (missed DID_RENEW) is not a partial write
            if not await self.store.set_expired(record_id, expired):
                logger.info("No renewal record %s to mark expired=%s", record_id, expired)

        return [mark]

    async def _log_renewal_status(self, ctx: _Context) -> None:
        signed_renewal_info = ctx.notification.signed_renewal_info
        if not signed_renewal_info:
            logger.info(
                "Renewal status changed for %s (subtype=%s)",
                ctx.transaction.original_transaction_id,
                ctx.notification.subtype,
            )
            return
        try:
            renewal = await self.verifier.decode_renewal_info(signed_renewal_info)
        except SignatureInvalidError:
            logger.warning(
                "Renewal info for %s failed verification",
                ctx.transaction.original_transaction_id,
            )
            return
        logger.info(
            "Renewal status changed for %s: auto_renew=%s product=%s subtype=%s",
            ctx.transaction.original_transaction_id,
            renewal.auto_renew_enabled,
            renewal.auto_renew_product_id,
            ctx.notification.subtype,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _apply(
        self,
        ntype: NotificationType,
        ctx: _Context,
        steps: list[Step],
    ) -> NotificationResult:
        """Run a handler's writes in order, stopping at the first store failure."""
        user_id = ctx.owner.user_id
        original_id = ctx.transaction.original_transaction_id
        writes = 0
        complete = True

        for step in steps:
            try:
                applied = await step()
            except StoreError:
                kind = (
                    EntitlementErrorKind.DEGRADED_SUCCESS
                    if writes
                    else EntitlementErrorKind.STORE_ERROR
                )
                logger.error(
                    "%s for transaction %s failed after %d write(s)",
                    ntype.value,
                    original_id,
                    writes,
                )
                return self._failure(ntype, kind, original_id, user_id)
            if applied is False:
                complete = False
            else:
                writes += 1

        if not complete:
            logger.error(
                "%s for transaction %s applied partially (%d write(s))",
                ntype.value,
                original_id,
                writes,
            )
            return self._failure(
                ntype, EntitlementErrorKind.DEGRADED_SUCCESS, original_id, user_id
            )

        logger.info("%s applied for user %s (transaction %s)", ntype.value, user_id, original_id)
        return NotificationResult(
            outcome=NotificationOutcome.APPLIED,
            notification_type=ntype,
            user_id=user_id,
            original_transaction_id=original_id,
        )

    @staticmethod
    def _failure(
        ntype: NotificationType,
        kind: EntitlementErrorKind,
        original_transaction_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> NotificationResult:
        partial = kind == EntitlementErrorKind.DEGRADED_SUCCESS
        return NotificationResult(
            outcome=NotificationOutcome.APPLIED if partial else NotificationOutcome.REJECTED,
            notification_type=ntype,
            error=kind,
            user_id=user_id,
            original_transaction_id=original_transaction_id,
        )
