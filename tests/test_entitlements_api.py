"""
Entitlements API Tests
======================

Tests for the account-facing endpoints:
- GET  /api/v1/entitlements/me
- GET  /api/v1/entitlements/me/purchases
- POST /api/v1/entitlements/purchases
- Summary cache ordering against webhook recomputes
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from app.services.cache import CacheKeys
from app.services.ledger import EntitlementLedger

from tests.conftest import (
    LIFETIME_PRODUCT,
    MONTHLY_PRODUCT,
    OTHER_USER_ID,
    USER_ID,
    auth_headers,
)

ME_URL = "/api/v1/entitlements/me"
PURCHASES_URL = "/api/v1/entitlements/purchases"
WEBHOOK_URL = "/api/v1/webhooks/app-store"


class TestGetEntitlement:

    @pytest.mark.asyncio
    async def test_requires_auth(self, client):
        response = await client.get(ME_URL)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_rejects_bad_token(self, client):
        response = await client.get(ME_URL, headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_no_purchases_is_not_ad_free(self, client, redis_mock):
        response = await client.get(ME_URL, headers=auth_headers())

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["ad_free"] is False
        assert data["product_type"] is None
        redis_mock.set.assert_awaited()
        assert redis_mock.set.await_args.kwargs["nx"] is True

    @pytest.mark.asyncio
    async def test_served_from_cache(self, client, redis_mock):
        redis_mock.get.return_value = (
            '{"user_id": "00000000-0000-0000-0000-0000000000a1", '
            '"ad_free": true, "product_type": "lifetime"}'
        )
        response = await client.get(ME_URL, headers=auth_headers())

        assert response.json()["data"]["ad_free"] is True
        redis_mock.set.assert_not_awaited()
        redis_mock.setex.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_cached_subscription_reads_false(self, client, redis_mock):
        past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
        redis_mock.get.return_value = (
            '{"user_id": "00000000-0000-0000-0000-0000000000a1", "ad_free": true, '
            f'"product_type": "subscription", "premium_expires_at": "{past}"}}'
        )
        response = await client.get(ME_URL, headers=auth_headers())
        assert response.json()["data"]["ad_free"] is False


class TestCommitPurchase:

    @pytest.mark.asyncio
    async def test_lifetime_purchase_grants_ad_free(self, client, signer):
        response = await client.post(
            PURCHASES_URL,
            json={"signed_transaction": signer.transaction(product_id=LIFETIME_PRODUCT)},
            headers=auth_headers(),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["applied"] is True
        assert data["summary"]["ad_free"] is True
        assert data["summary"]["product_type"] == "lifetime"

        me = await client.get(ME_URL, headers=auth_headers())
        assert me.json()["data"]["ad_free"] is True

    @pytest.mark.asyncio
    async def test_recommit_is_noop(self, client, signer):
        signed = signer.transaction(
            product_id=MONTHLY_PRODUCT,
            expires_date=datetime.now(timezone.utc) + timedelta(days=30),
        )
        body = {"signed_transaction": signed, "source": "restore"}

        first = await client.post(PURCHASES_URL, json=body, headers=auth_headers())
        second = await client.post(PURCHASES_URL, json=body, headers=auth_headers())

        assert first.json()["data"]["applied"] is True
        assert second.status_code == 200
        assert second.json()["data"]["applied"] is False
        assert second.json()["data"]["summary"]["ad_free"] is True

    @pytest.mark.asyncio
    async def test_transaction_of_other_account_is_forbidden(self, client, signer):
        response = await client.post(
            PURCHASES_URL,
            json={"signed_transaction": signer.transaction()},
            headers=auth_headers(OTHER_USER_ID),
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ENT_011"

    @pytest.mark.asyncio
    async def test_forged_transaction_is_rejected(self, client, signer):
        forged = signer.sign(
            signer.transaction_claims(),
            key=ec.generate_private_key(ec.SECP256R1()),
        )
        response = await client.post(
            PURCHASES_URL,
            json={"signed_transaction": forged},
            headers=auth_headers(),
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "ENT_007"

    @pytest.mark.asyncio
    async def test_garbage_transaction_is_400(self, client):
        response = await client.post(
            PURCHASES_URL,
            json={"signed_transaction": "garbage"},
            headers=auth_headers(),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_empty_transaction_is_422(self, client):
        response = await client.post(
            PURCHASES_URL,
            json={"signed_transaction": ""},
            headers=auth_headers(),
        )
        assert response.status_code == 422


class TestListPurchases:

    @pytest.mark.asyncio
    async def test_lists_own_rows_newest_first(self, client, signer):
        now = datetime.now(timezone.utc)
        for tid, purchased in (("1", now - timedelta(days=10)), ("2", now - timedelta(days=1))):
            await client.post(
                PURCHASES_URL,
                json={"signed_transaction": signer.transaction(
                    transaction_id=tid, purchase_date=purchased
                )},
                headers=auth_headers(),
            )

        response = await client.get(f"{ME_URL}/purchases", headers=auth_headers())

        assert response.status_code == 200
        rows = response.json()["data"]
        assert [r["transaction_id"] for r in rows] == ["2", "1"]
        assert rows[0]["last_notification_type"] == "CLIENT_PURCHASE"
        assert rows[0]["environment"] == "production"

    @pytest.mark.asyncio
    async def test_other_account_sees_nothing(self, client, signer):
        await client.post(
            PURCHASES_URL,
            json={"signed_transaction": signer.transaction()},
            headers=auth_headers(),
        )
        response = await client.get(f"{ME_URL}/purchases", headers=auth_headers(OTHER_USER_ID))
        assert response.json()["data"] == []


class DictRedis:
    """In-memory Redis covering the commands the summary cache uses."""

    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value
        return True

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0


class TestSummaryCacheOrdering:

    @pytest.mark.asyncio
    async def test_webhook_writes_recomputed_summary(self, client, signer):
        redis = DictRedis()
        with patch("app.services.cache.get_redis", return_value=redis):
            await client.post(WEBHOOK_URL, json={"signedPayload": signer.notification(
                "ONE_TIME_CHARGE", datetime.now(timezone.utc), signer.transaction()
            )})

        cached = redis.store[CacheKeys.entitlement_summary(str(USER_ID))]
        assert '"ad_free": true' in cached

    @pytest.mark.asyncio
    async def test_refund_during_summary_read_is_not_overwritten(self, client, signer):
        redis = DictRedis()
        key = CacheKeys.entitlement_summary(str(USER_ID))
        t0 = datetime.now(timezone.utc) - timedelta(hours=2)
        refund = signer.notification(
            "REFUND",
            t0 + timedelta(hours=1),
            signer.transaction(revocation_date=t0 + timedelta(hours=1)),
        )

        original_get_summary = EntitlementLedger.get_summary
        fired = []

        async def get_summary_then_refund(self, user_id):
            # Refund lands after /me has read the row, before it fills the cache
            summary = await original_get_summary(self, user_id)
            if not fired:
                fired.append(True)
                response = await client.post(WEBHOOK_URL, json={"signedPayload": refund})
                assert response.json()["outcome"] == "applied"
            return summary

        with patch("app.services.cache.get_redis", return_value=redis):
            await client.post(WEBHOOK_URL, json={"signedPayload": signer.notification(
                "ONE_TIME_CHARGE", t0, signer.transaction()
            )})
            redis.store.pop(key)

            with patch.object(EntitlementLedger, "get_summary", get_summary_then_refund):
                await client.get(ME_URL, headers=auth_headers())

            after = await client.get(ME_URL, headers=auth_headers())

        assert fired
        assert after.json()["data"]["ad_free"] is False
        assert '"ad_free": false' in redis.store[key]
