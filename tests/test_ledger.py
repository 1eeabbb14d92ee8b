"""
Entitlement Ledger Tests
========================

Tests for the ledger upsert and summary recompute against SQLite:
- Insert / newer update / older no-op
- Out-of-order and duplicate delivery converge
- Refund of a lifetime purchase
- Owner association is never reassigned
"""

import itertools
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.models.entitlement import EntitlementSummary, PurchaseRecord, StoreEnvironment
from app.services.ledger import EntitlementLedger
from app.services.reconciliation import resolve_is_active

from tests.conftest import LIFETIME_PRODUCT, MONTHLY_PRODUCT, OTHER_USER_ID, USER_ID

T0 = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(days=2)


async def _apply(
    ledger: EntitlementLedger,
    notification_type: str,
    at: datetime,
    *,
    transaction_id: str = "tx-1",
    product_id: str = LIFETIME_PRODUCT,
    expires_date=None,
    user_id=USER_ID,
    environment=StoreEnvironment.PRODUCTION,
):
    return await ledger.upsert_purchase_record(
        transaction_id=transaction_id,
        original_transaction_id=transaction_id,
        product_id=product_id,
        purchase_date=T0,
        expires_date=expires_date,
        is_active=resolve_is_active(notification_type),
        notification_type=notification_type,
        notification_date=at,
        environment=environment,
        user_id=user_id,
    )


async def _row(db, transaction_id: str = "tx-1") -> PurchaseRecord:
    result = await db.execute(
        select(PurchaseRecord)
        .where(PurchaseRecord.transaction_id == transaction_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestUpsertPurchaseRecord:

    @pytest.mark.asyncio
    async def test_inserts_new_record(self, db):
        ledger = EntitlementLedger(db)
        outcome = await _apply(ledger, "ONE_TIME_CHARGE", T0)

        assert outcome.applied is True
        row = await _row(db)
        assert row.user_id == USER_ID
        assert row.is_active is True
        assert row.last_notification_type == "ONE_TIME_CHARGE"

    @pytest.mark.asyncio
    async def test_newer_event_overwrites(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "ONE_TIME_CHARGE", T0)
        outcome = await _apply(ledger, "REFUND", T0 + timedelta(hours=1))

        assert outcome.applied is True
        row = await _row(db)
        assert row.is_active is False
        assert row.last_notification_type == "REFUND"

    @pytest.mark.asyncio
    async def test_older_event_is_noop(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "REFUND", T0 + timedelta(hours=1))
        outcome = await _apply(ledger, "ONE_TIME_CHARGE", T0)

        assert outcome.applied is False
        row = await _row(db)
        assert row.is_active is False
        assert row.last_notification_type == "REFUND"

    @pytest.mark.asyncio
    async def test_duplicate_is_noop_and_single_row(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "ONE_TIME_CHARGE", T0)
        outcome = await _apply(ledger, "ONE_TIME_CHARGE", T0)

        assert outcome.applied is False
        count = await db.scalar(select(func.count()).select_from(PurchaseRecord))
        assert count == 1

    @pytest.mark.asyncio
    async def test_equal_time_deactivation_wins(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "DID_RENEW", T0, expires_date=T0 + timedelta(days=30))
        outcome = await _apply(ledger, "REVOKE", T0, expires_date=T0 + timedelta(days=30))

        assert outcome.applied is True
        assert (await _row(db)).is_active is False

        # ...and a same-time reactivation does not undo it
        again = await _apply(ledger, "DID_RENEW", T0, expires_date=T0 + timedelta(days=30))
        assert again.applied is False
        assert (await _row(db)).is_active is False

    @pytest.mark.asyncio
    async def test_user_id_is_not_overwritten_by_upsert(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "ONE_TIME_CHARGE", T0)
        await _apply(ledger, "REFUND", T0 + timedelta(hours=1), user_id=OTHER_USER_ID)

        assert (await _row(db)).user_id == USER_ID


class TestOrderIndependence:
    """Any delivery order (with duplicates) ends in the latest event's state."""

    EVENTS = [
        ("SUBSCRIBED", T0),
        ("DID_RENEW", T0 + timedelta(days=30)),
        ("EXPIRED", T0 + timedelta(days=61)),
    ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
    async def test_final_state_matches_latest_event(self, session_factory, order):
        async with session_factory() as db:
            ledger = EntitlementLedger(db)
            sequence = [self.EVENTS[i] for i in order]
            sequence.append(sequence[0])  # a redelivery
            for notification_type, at in sequence:
                await _apply(
                    ledger, notification_type, at,
                    product_id=MONTHLY_PRODUCT,
                    expires_date=T0 + timedelta(days=60),
                )
            await ledger.recompute_summary(USER_ID)
            await db.commit()

            row = await _row(db)
            assert row.last_notification_type == "EXPIRED"
            assert row.is_active is False
            summary = await ledger.get_summary(USER_ID)
            assert summary.ad_free is False


class TestAssociateUser:

    @pytest.mark.asyncio
    async def test_associates_unowned_record(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "ONE_TIME_CHARGE", T0, user_id=None)

        owner = await ledger.associate_user("tx-1", USER_ID)
        assert owner == USER_ID
        assert (await _row(db)).user_id == USER_ID

    @pytest.mark.asyncio
    async def test_never_reassigns(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "ONE_TIME_CHARGE", T0)

        owner = await ledger.associate_user("tx-1", OTHER_USER_ID)
        assert owner == USER_ID
        assert (await _row(db)).user_id == USER_ID

    @pytest.mark.asyncio
    async def test_resolve_user_prefers_app_account_token(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "SUBSCRIBED", T0, product_id=MONTHLY_PRODUCT)

        token = uuid.uuid4()
        assert await ledger.resolve_user_id(token, "tx-1") == token
        assert await ledger.resolve_user_id(None, "tx-1") == USER_ID
        assert await ledger.resolve_user_id(None, "unknown") is None


class TestRecomputeSummary:

    @pytest.mark.asyncio
    async def test_refund_of_lifetime_flips_ad_free(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "ONE_TIME_CHARGE", T0)
        first = await ledger.recompute_summary(USER_ID)
        assert first.ad_free is True

        await _apply(ledger, "REFUND", T0 + timedelta(days=1))
        second = await ledger.recompute_summary(USER_ID)

        assert second.ad_free is False
        assert second.product_type is None

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "ONE_TIME_CHARGE", T0)

        first = await ledger.recompute_summary(USER_ID)
        second = await ledger.recompute_summary(USER_ID)

        assert first == second
        count = await db.scalar(select(func.count()).select_from(EntitlementSummary))
        assert count == 1

    @pytest.mark.asyncio
    async def test_sandbox_rows_do_not_entitle_production(self, db):
        ledger = EntitlementLedger(db, environment=StoreEnvironment.PRODUCTION)
        await _apply(ledger, "ONE_TIME_CHARGE", T0, environment=StoreEnvironment.SANDBOX)

        summary = await ledger.recompute_summary(USER_ID)
        assert summary.ad_free is False

    @pytest.mark.asyncio
    async def test_ad_free_implies_entitling_row(self, db):
        ledger = EntitlementLedger(db)
        await _apply(ledger, "ONE_TIME_CHARGE", T0, transaction_id="tx-a")
        await _apply(
            ledger, "SUBSCRIBED", T0, transaction_id="tx-b",
            product_id=MONTHLY_PRODUCT, expires_date=T0 + timedelta(days=30),
        )
        await ledger.recompute_summary(USER_ID)

        summary = await ledger.get_summary(USER_ID)
        rows = await ledger.list_records(USER_ID)
        now = datetime.now(timezone.utc)
        assert summary.ad_free is True
        assert any(
            r.is_active and (
                r.expires_date is None
                or r.expires_date.replace(tzinfo=timezone.utc) > now
            )
            for r in rows
        )
