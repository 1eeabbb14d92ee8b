"""
Entitlement Service
===================

Account-facing entitlement operations:
- Summary reads (Redis read-through, DB fallback)
- Committing a device-verified StoreKit transaction to the ledger
"""

import logging
from dataclasses import dataclass
from typing import Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ErrorCodes, ForbiddenError
from app.models.entitlement import EntitlementSummary
from app.schemas.entitlement import EntitlementSummaryData, PurchaseSource
from app.services.app_store import AppStoreSignedPayloadVerifier
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager
from app.services.ledger import EntitlementLedger
from app.services.reconciliation import effective_ad_free, resolve_is_active
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

_NOTIFICATION_TYPE_BY_SOURCE = {
    PurchaseSource.PURCHASE: "CLIENT_PURCHASE",
    PurchaseSource.RESTORE: "CLIENT_RESTORE",
}


@dataclass(frozen=True)
class CommitResult:
    transaction_id: str
    applied: bool
    summary: EntitlementSummaryData


def summary_to_data(
    user_id: uuid.UUID,
    summary: Optional[EntitlementSummary],
) -> EntitlementSummaryData:
    """
    Build the API view of a stored summary.

    No row means not entitled. A stored subscription summary whose
    expiry has passed is reported as not entitled until recomputed.
    """
    if summary is None:
        return EntitlementSummaryData(user_id=user_id, ad_free=False)

    return EntitlementSummaryData(
        user_id=user_id,
        ad_free=effective_ad_free(summary.ad_free, summary.premium_expires_at),
        product_type=summary.product_type.value if summary.product_type else None,
        purchase_date=summary.purchase_date,
        last_purchase_date=summary.last_purchase_date,
        premium_expires_at=summary.premium_expires_at,
        recomputed_at=summary.recomputed_at,
    )


async def get_cached_summary(user_id: uuid.UUID) -> Optional[EntitlementSummaryData]:
    """Summary from the read-through cache, or None on miss."""
    cached = await CacheManager.get(CacheKeys.entitlement_summary(str(user_id)))
    if cached is None:
        return None
    data = EntitlementSummaryData.model_validate(cached)
    # Re-check expiry; the cached copy may outlive the subscription
    if not effective_ad_free(data.ad_free, data.premium_expires_at):
        data.ad_free = False
    return data


async def cache_summary(data: EntitlementSummaryData, only_if_missing: bool = False) -> bool:
    """
    Write a summary to the cache.

    Read paths pass ``only_if_missing`` so a fill from an older read can
    never replace a snapshot written after a recompute.
    """
    key = CacheKeys.entitlement_summary(str(data.user_id))
    value = data.model_dump(mode="json")
    if only_if_missing:
        return await CacheManager.set_with_check(key, value, ttl=CacheManager.TTL_SHORT)
    return await CacheManager.set(key, value, ttl=CacheManager.TTL_SHORT)


class EntitlementService:
    """Service for reading and committing entitlements for an account."""

    def __init__(self, db: AsyncSession, verifier: Optional[AppStoreSignedPayloadVerifier] = None):
        self.db = db
        self.verifier = verifier
        self.ledger = EntitlementLedger(db)

    async def load_summary(self, user_id: uuid.UUID) -> EntitlementSummaryData:
        """Read the stored summary from the database and fill the cache if empty."""
        summary = await self.ledger.get_summary(user_id)
        data = summary_to_data(user_id, summary)
        await cache_summary(data, only_if_missing=True)
        return data

    async def refresh_cache(self, user_id: uuid.UUID) -> None:
        """
        Write the committed summary through to the cache.

        Call after the recompute has been committed. If the write fails
        the key is dropped so readers go back to the database.
        """
        try:
            data = summary_to_data(user_id, await self.ledger.get_summary(user_id))
            written = await cache_summary(data)
        except Exception as e:
            logger.warning("Summary cache refresh failed for user=%s: %s", user_id, e)
            written = False
        if not written:
            await CacheInvalidator.on_entitlement_change(str(user_id))

    async def commit_transaction(
        self,
        user_id: uuid.UUID,
        signed_transaction: str,
        source: PurchaseSource = PurchaseSource.PURCHASE,
    ) -> CommitResult:
        """
        Verify a signed StoreKit transaction and record it for ``user_id``.

        The transaction's own ``signedDate`` is its event time, so a
        later refund notification still wins over a replayed commit.

        Args:
            user_id: Authenticated caller.
            signed_transaction: JWS transaction from the device.
            source: Purchase or restore flow.

        Returns:
            CommitResult with the recomputed summary.

        Raises:
            SignatureInvalid / MalformedNotification: Verification failed.
            ForbiddenError: The transaction belongs to another account.
        """
        if self.verifier is None:
            raise RuntimeError("EntitlementService needs a verifier to commit transactions")

        txn = self.verifier.decode_transaction(signed_transaction)

        if txn.app_account_token is not None and txn.app_account_token != user_id:
            logger.warning(
                "Transaction owner mismatch: transaction_id=%s token=%s caller=%s",
                txn.transaction_id,
                txn.app_account_token,
                user_id,
            )
            raise ForbiddenError(
                code=ErrorCodes.ENT_TRANSACTION_OWNER_MISMATCH,
                message="Transaction belongs to a different account",
            )

        notification_type = _NOTIFICATION_TYPE_BY_SOURCE[source]
        upsert = await self.ledger.upsert_purchase_record(
            transaction_id=txn.transaction_id,
            original_transaction_id=txn.original_transaction_id,
            product_id=txn.product_id,
            purchase_date=txn.purchase_date,
            original_purchase_date=txn.original_purchase_date,
            expires_date=txn.expires_date,
            revocation_date=txn.revocation_date,
            is_active=resolve_is_active(notification_type, txn.revocation_date),
            notification_type=notification_type,
            notification_date=txn.signed_date or utc_now(),
            environment=txn.environment,
            user_id=user_id,
            app_account_token=txn.app_account_token,
            raw_transaction=txn.claims,
        )

        owner = await self.ledger.associate_user(txn.transaction_id, user_id)
        if owner != user_id:
            raise ForbiddenError(
                code=ErrorCodes.ENT_TRANSACTION_OWNER_MISMATCH,
                message="Transaction belongs to a different account",
            )

        snapshot = await self.ledger.recompute_summary(user_id)

        logger.info(
            "transaction_id=%s notification_type=%s outcome=%s",
            txn.transaction_id,
            notification_type,
            "applied" if upsert.applied else "duplicate",
        )

        summary_data = EntitlementSummaryData(
            user_id=user_id,
            recomputed_at=utc_now(),
            **snapshot.as_dict(),
        )
        return CommitResult(
            transaction_id=txn.transaction_id,
            applied=upsert.applied,
            summary=summary_data,
        )
