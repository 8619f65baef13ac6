"""
Webhook API Tests
=================

Tests for /api/v1/webhooks:
- Status codes Apple sees for each processing outcome
- Redelivery short-circuit through Redis
- Test notification endpoints
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from app.core.errors import ErrorCodes, PlatformError
from app.models import Profile
from app.schemas.app_store import NotificationType
from app.services import app_store_api as app_store_api_module
from app.services.cache import CacheKeys
from app.services.entitlement_store import EntitlementStore

from conftest import PRODUCT_ID, USER_ID, make_notification, make_transaction

ORIGINAL_ID = "2000000000000001"
WEBHOOK_URL = "/api/v1/webhooks/apple"


@pytest_asyncio.fixture
async def subscribed_user(session_factory):
    """USER_ID with a stored, active subscription."""
    async with session_factory() as session:
        session.add(Profile(user_id=USER_ID))
        await session.commit()
        store = EntitlementStore(session)
        await store.upsert_subscription(
            user_id=USER_ID,
            product_id=PRODUCT_ID,
            transaction_id=ORIGINAL_ID,
            environment="Sandbox",
            purchased_at=datetime(2023, 12, 1, tzinfo=timezone.utc),
        )
        await store.set_subscribed(USER_ID, True)
        await store.set_ever_purchased(USER_ID)


async def _profile(session_factory) -> Profile:
    async with session_factory() as session:
        return await EntitlementStore(session).get_profile(USER_ID)


class TestAppleWebhook:

    @pytest.mark.asyncio
    async def test_expired_revokes_access(self, client, verifier, session_factory, subscribed_user):
        verifier.add_transaction("tx-token", make_transaction())
        verifier.add_notification("payload", make_notification(NotificationType.EXPIRED))

        response = await client.post(WEBHOOK_URL, json={"signedPayload": "payload"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Webhook processed successfully"}
        assert (await _profile(session_factory)).subscribed is False

    @pytest.mark.asyncio
    async def test_forged_payload_returns_500(self, client, session_factory, subscribed_user):
        response = await client.post(WEBHOOK_URL, json={"signedPayload": "forged"})

        assert response.status_code == 500
        assert response.json()["success"] is False
        assert (await _profile(session_factory)).subscribed is True

    @pytest.mark.asyncio
    async def test_missing_signed_payload_returns_400(self, client):
        response = await client.post(WEBHOOK_URL, json={})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == ErrorCodes.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_notification_without_transaction_returns_400(self, client, verifier):
        verifier.add_notification(
            "payload",
            make_notification(NotificationType.EXPIRED, signed_transaction_info=None),
        )

        response = await client.post(WEBHOOK_URL, json={"signedPayload": "payload"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == ErrorCodes.WEBHOOK_MALFORMED

    @pytest.mark.asyncio
    async def test_unattributed_transaction_is_acknowledged(self, client, verifier):
        verifier.add_transaction("tx-token", make_transaction(original_transaction_id="42"))
        verifier.add_notification("payload", make_notification(NotificationType.DID_RENEW))

        response = await client.post(WEBHOOK_URL, json={"signedPayload": "payload"})

        assert response.status_code == 200
        assert response.json()["message"] == (
            "Notification acknowledged; transaction not attributed"
        )

    @pytest.mark.asyncio
    async def test_test_notification_is_acknowledged(self, client, verifier):
        verifier.add_notification(
            "payload",
            make_notification(NotificationType.TEST, signed_transaction_info=None),
        )

        response = await client.post(WEBHOOK_URL, json={"signedPayload": "payload"})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_profile_returns_500(self, client, verifier, session_factory):
        async with session_factory() as session:
            await EntitlementStore(session).upsert_subscription(
                user_id=USER_ID,
                product_id=PRODUCT_ID,
                transaction_id=ORIGINAL_ID,
                environment="Sandbox",
                purchased_at=datetime(2023, 12, 1, tzinfo=timezone.utc),
            )
        verifier.add_transaction("tx-token", make_transaction())
        verifier.add_notification("payload", make_notification(NotificationType.EXPIRED))

        response = await client.post(WEBHOOK_URL, json={"signedPayload": "payload"})

        assert response.status_code == 500

    @pytest.mark.asyncio
    async def test_redelivery_is_skipped(
        self, client, verifier, fake_redis, session_factory, subscribed_user
    ):
        notification = make_notification(NotificationType.EXPIRED)
        verifier.add_transaction("tx-token", make_transaction())
        verifier.add_notification("payload", notification)

        first = await client.post(WEBHOOK_URL, json={"signedPayload": "payload"})
        assert first.status_code == 200
        assert CacheKeys.webhook_processed(notification.notification_uuid) in fake_redis.data

        second = await client.post(WEBHOOK_URL, json={"signedPayload": "payload"})

        assert second.status_code == 200
        assert second.json()["message"] == "Notification already processed"

    @pytest.mark.asyncio
    async def test_failed_notification_is_not_marked_processed(
        self, client, verifier, fake_redis
    ):
        notification = make_notification(NotificationType.EXPIRED, signed_transaction_info="forged")
        verifier.add_notification("payload", notification)

        response = await client.post(WEBHOOK_URL, json={"signedPayload": "payload"})

        assert response.status_code == 500
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    async def test_applied_notification_clears_history_cache(
        self, client, verifier, fake_redis, subscribed_user
    ):
        fake_redis.data[CacheKeys.subscription_history(USER_ID)] = "[]"
        verifier.add_transaction("tx-token", make_transaction())
        verifier.add_notification("payload", make_notification(NotificationType.EXPIRED))

        response = await client.post(WEBHOOK_URL, json={"signedPayload": "payload"})

        assert response.status_code == 200
        assert CacheKeys.subscription_history(USER_ID) not in fake_redis.data

    @pytest.mark.asyncio
    async def test_no_api_key_required(self, client, verifier):
        verifier.add_notification(
            "payload",
            make_notification(NotificationType.TEST, signed_transaction_info=None),
        )

        response = await client.post(
            WEBHOOK_URL,
            json={"signedPayload": "payload"},
            headers={"X-API-Key": "wrong"},
        )

        assert response.status_code == 200


class TestLiveness:

    @pytest.mark.asyncio
    async def test_webhook_test_endpoint(self, client):
        response = await client.get("/api/v1/webhooks/test")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Webhook service is running"


class TestAppStoreTestNotifications:

    @pytest.mark.asyncio
    async def test_request_requires_api_key(self, client):
        response = await client.post("/api/v1/webhooks/apple/test-notification")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_request_test_notification(self, client, app_store_api, auth_headers):
        app_store_api.request_test_notification.return_value = "token-123"

        response = await client.post(
            "/api/v1/webhooks/apple/test-notification", headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"testNotificationToken": "token-123"}

    @pytest.mark.asyncio
    async def test_request_fails_when_apple_unavailable(
        self, client, app_store_api, auth_headers
    ):
        app_store_api.request_test_notification.side_effect = PlatformError(
            "unavailable", http_status=503
        )

        response = await client.post(
            "/api/v1/webhooks/apple/test-notification", headers=auth_headers
        )

        assert response.status_code == 503
        assert response.json()["error"]["code"] == ErrorCodes.WEBHOOK_TEST_FAILED

    @pytest.mark.asyncio
    async def test_notification_status(self, client, app_store_api, auth_headers):
        status = app_store_api_module.TestNotificationStatus(
            signed_payload="signed",
            send_attempts=[{"sendAttemptResult": "SUCCESS"}],
        )
        app_store_api.get_test_notification_status.return_value = status

        response = await client.get(
            "/api/v1/webhooks/apple/test-notification/token-123", headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["signedPayload"] == "signed"
        assert data["sendAttempts"] == [{"sendAttemptResult": "SUCCESS"}]
        app_store_api.get_test_notification_status.assert_awaited_once_with("token-123")
