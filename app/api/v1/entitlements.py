"""
Entitlements API Endpoints
==========================

Ad-free entitlement reads and purchase commits for the signed-in account.

Only the server writes the ledger and summary; devices submit the
signed StoreKit transaction and get the recomputed summary back.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.core.errors import (
    AuthenticationError,
    MalformedNotification,
    SignatureInvalid,
    ValidationError,
)
from app.db.session import LazyDB, get_lazy_db
from app.dependencies import CurrentUserId, DBSession, Verifier
from app.schemas.entitlement import (
    CommitPurchaseData,
    CommitPurchaseRequest,
    CommitPurchaseResponse,
    EntitlementSummaryResponse,
    PurchaseRecordData,
    PurchaseRecordListResponse,
)
from app.services.entitlement_service import (
    EntitlementService,
    get_cached_summary,
)
from app.services.ledger import EntitlementLedger

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/me",
    response_model=EntitlementSummaryResponse,
)
async def get_my_entitlement(
    user_id: CurrentUserId,
    lazy_db: Annotated[LazyDB, Depends(get_lazy_db)],
):
    """
    Get the caller's entitlement summary.

    Served from Redis when cached; a cache hit never opens a DB session.
    A user with no summary row is not ad-free.
    """
    cached = await get_cached_summary(user_id)
    if cached is not None:
        return EntitlementSummaryResponse(data=cached)

    db = await lazy_db.get()
    data = await EntitlementService(db).load_summary(user_id)
    return EntitlementSummaryResponse(data=data)


@router.get(
    "/me/purchases",
    response_model=PurchaseRecordListResponse,
)
async def list_my_purchases(
    user_id: CurrentUserId,
    db: DBSession,
):
    """List the caller's ledger rows, newest purchase first."""
    records = await EntitlementLedger(db).list_records(user_id)
    return PurchaseRecordListResponse(
        data=[
            PurchaseRecordData(
                transaction_id=r.transaction_id,
                original_transaction_id=r.original_transaction_id,
                product_id=r.product_id,
                purchase_date=r.purchase_date,
                expires_date=r.expires_date,
                revocation_date=r.revocation_date,
                is_active=r.is_active,
                last_notification_type=r.last_notification_type,
                last_notification_date=r.last_notification_date,
                environment=r.environment.value,
            )
            for r in records
        ]
    )


@router.post(
    "/purchases",
    response_model=CommitPurchaseResponse,
    status_code=status.HTTP_200_OK,
)
async def commit_purchase(
    request: CommitPurchaseRequest,
    user_id: CurrentUserId,
    db: DBSession,
    verifier: Verifier,
):
    """
    Commit a StoreKit transaction after a purchase or restore.

    The signed transaction is verified server-side; the device's own
    verification is never trusted on its own. Re-committing the same
    transaction is a no-op that returns the current summary.
    """
    service = EntitlementService(db, verifier)
    try:
        result = await service.commit_transaction(
            user_id,
            request.signed_transaction,
            request.source,
        )
    except SignatureInvalid as e:
        logger.warning("Rejected signed transaction from user=%s: %s", user_id, e.message)
        raise AuthenticationError(code=e.code, message="Transaction could not be verified")
    except MalformedNotification as e:
        raise ValidationError(
            message="Malformed signed transaction",
            field="signed_transaction",
            code=e.code,
        )

    await db.commit()
    await service.refresh_cache(user_id)

    return CommitPurchaseResponse(
        data=CommitPurchaseData(
            transaction_id=result.transaction_id,
            applied=result.applied,
            summary=result.summary,
        )
    )
