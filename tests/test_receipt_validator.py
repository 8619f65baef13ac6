"""
Receipt Validator Tests
=======================

Tests for ReceiptValidator:
- Active purchase is recorded and flags are set
- Ownership mismatch and bad signatures persist nothing
- Expiry boundary against a fixed clock
- Store failures and degraded success
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.core.errors import EntitlementErrorKind, StoreError
from app.services.receipt_validator import ReceiptValidator, is_subscription_active

from conftest import NOW, OTHER_USER_ID, PRODUCT_ID, USER_ID, make_transaction

PRODUCT_IDS = frozenset({PRODUCT_ID, "com.comms.comms.premium_yearly"})


def _validator(verifier, store) -> ReceiptValidator:
    return ReceiptValidator(
        verifier,
        store,
        product_ids=PRODUCT_IDS,
        default_environment="Sandbox",
        clock=lambda: NOW,
    )


class TestActivityRule:
    """Expiry boundary at now = 2024-01-01T00:00:00Z."""

    def test_expiry_equal_to_now_is_inactive(self):
        tx = make_transaction(expires_date=NOW)
        assert is_subscription_active(tx, PRODUCT_IDS, NOW) is False

    def test_expiry_one_millisecond_later_is_active(self):
        tx = make_transaction(expires_date=NOW + timedelta(milliseconds=1))
        assert is_subscription_active(tx, PRODUCT_IDS, NOW) is True

    def test_no_expiry_is_active(self):
        tx = make_transaction(expires_date=None)
        assert is_subscription_active(tx, PRODUCT_IDS, NOW) is True

    def test_unknown_product_is_inactive(self):
        tx = make_transaction(product_id="com.comms.comms.tip_jar", expires_date=None)
        assert is_subscription_active(tx, PRODUCT_IDS, NOW) is False


class TestValidate:

    @pytest.mark.asyncio
    async def test_active_purchase_is_recorded(self, verifier, store, profile):
        token = verifier.add_transaction("tok", make_transaction())

        result = await _validator(verifier, store).validate(token, USER_ID, PRODUCT_ID)

        assert result.active is True
        assert result.error is None
        assert result.transaction_id == "2000000000000001"

        records = await store.list_subscriptions(USER_ID)
        assert len(records) == 1
        assert records[0].environment == "Sandbox"

        row = await store.get_profile(USER_ID)
        assert row.subscribed is True
        assert row.has_purchased_subscription_before is True

    @pytest.mark.asyncio
    async def test_validating_twice_keeps_one_record(self, verifier, store, profile):
        token = verifier.add_transaction("tok", make_transaction())
        validator = _validator(verifier, store)

        await validator.validate(token, USER_ID, PRODUCT_ID)
        await validator.validate(token, USER_ID, PRODUCT_ID)

        assert len(await store.list_subscriptions(USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_signed_environment_wins(self, verifier, store, profile):
        token = verifier.add_transaction("tok", make_transaction(environment="Sandbox"))

        await _validator(verifier, store).validate(
            token, USER_ID, PRODUCT_ID, environment="Production"
        )

        records = await store.list_subscriptions(USER_ID)
        assert records[0].environment == "Sandbox"

    @pytest.mark.asyncio
    async def test_request_environment_used_when_unsigned(self, verifier, store, profile):
        token = verifier.add_transaction("tok", make_transaction(environment=None))

        await _validator(verifier, store).validate(
            token, USER_ID, PRODUCT_ID, environment="Production"
        )

        records = await store.list_subscriptions(USER_ID)
        assert records[0].environment == "Production"

    @pytest.mark.asyncio
    async def test_ownership_mismatch_persists_nothing(self, verifier, store, profile):
        token = verifier.add_transaction("tok", make_transaction(app_account_token=OTHER_USER_ID))

        result = await _validator(verifier, store).validate(token, USER_ID, PRODUCT_ID)

        assert result.active is False
        assert result.error == EntitlementErrorKind.OWNERSHIP_MISMATCH
        assert await store.list_subscriptions(USER_ID) == []
        assert await store.list_subscriptions(OTHER_USER_ID) == []
        assert (await store.get_profile(USER_ID)).subscribed is False

    @pytest.mark.asyncio
    async def test_missing_app_account_token_is_a_mismatch(self, verifier, store, profile):
        token = verifier.add_transaction("tok", make_transaction(app_account_token=None))

        result = await _validator(verifier, store).validate(token, USER_ID, PRODUCT_ID)

        assert result.error == EntitlementErrorKind.OWNERSHIP_MISMATCH

    @pytest.mark.asyncio
    async def test_invalid_signature_persists_nothing(self, verifier, store, profile):
        result = await _validator(verifier, store).validate("forged", USER_ID, PRODUCT_ID)

        assert result.active is False
        assert result.error == EntitlementErrorKind.SIGNATURE_INVALID
        assert await store.list_subscriptions(USER_ID) == []

    @pytest.mark.asyncio
    async def test_expired_purchase_persists_nothing(self, verifier, store, profile):
        token = verifier.add_transaction("tok", make_transaction(expires_date=NOW))

        result = await _validator(verifier, store).validate(token, USER_ID, PRODUCT_ID)

        assert result.active is False
        assert result.error is None
        assert result.expires_date == NOW
        assert await store.list_subscriptions(USER_ID) == []

    @pytest.mark.asyncio
    async def test_missing_profile_is_degraded_success(self, verifier, store):
        token = verifier.add_transaction("tok", make_transaction())

        result = await _validator(verifier, store).validate(token, USER_ID, PRODUCT_ID)

        assert result.active is True
        assert result.error == EntitlementErrorKind.DEGRADED_SUCCESS
        assert result.transaction_id == "2000000000000001"
        assert len(await store.list_subscriptions(USER_ID)) == 1


class TestStoreFailures:

    @pytest.mark.asyncio
    async def test_upsert_failure_is_store_error(self, verifier):
        token = verifier.add_transaction("tok", make_transaction())
        store = AsyncMock()
        store.upsert_subscription.side_effect = StoreError("down")

        result = await _validator(verifier, store).validate(token, USER_ID, PRODUCT_ID)

        assert result.active is False
        assert result.error == EntitlementErrorKind.STORE_ERROR
        store.set_subscribed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_flag_failure_after_upsert_is_degraded(self, verifier):
        token = verifier.add_transaction("tok", make_transaction())
        store = AsyncMock()
        store.set_subscribed.side_effect = StoreError("down")

        result = await _validator(verifier, store).validate(token, USER_ID, PRODUCT_ID)

        assert result.active is True
        assert result.error == EntitlementErrorKind.DEGRADED_SUCCESS
        store.upsert_subscription.assert_awaited_once()
