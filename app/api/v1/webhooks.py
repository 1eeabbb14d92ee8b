"""
Webhooks API Endpoints
======================

Receives App Store Server Notifications (version 2).

Authentication:
    The body is ``{"signedPayload": "<JWS>"}``. The JWS must chain to a
    pinned Apple root certificate and verify with the leaf key; the
    nested ``signedTransactionInfo`` is verified the same way.

Idempotency:
    The ledger upsert only overwrites a record for a strictly newer
    event time, so redelivered or reordered notifications are no-ops
    and are acknowledged with 200.

Status codes (Apple retries anything but 200):
    401 signature/certificate failure
    400 unparseable payload
    500 processing error (transaction rolled back)
"""

import json
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ErrorCodes, MalformedNotification, SignatureInvalid
from app.db.session import get_db
from app.dependencies import Verifier
from app.schemas.entitlement import WebhookAck
from app.services.entitlement_service import EntitlementService
from app.services.webhook_ingest import WebhookIngestService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/app-store", response_model=WebhookAck)
async def app_store_webhook(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    verifier: Verifier,
):
    """
    Handle an App Store Server Notification.

    Notification types applied to the ledger:
    - SUBSCRIBED, DID_RENEW, ONE_TIME_CHARGE, RENEWAL_EXTENDED,
      OFFER_REDEEMED, REFUND_REVERSED (active)
    - DID_CHANGE_RENEWAL_STATUS, DID_CHANGE_RENEWAL_PREF (active until expiry)
    - DID_FAIL_TO_RENEW, EXPIRED, GRACE_PERIOD_EXPIRED (inactive)
    - REFUND, REVOKE (inactive regardless of expiry)

    Everything else (TEST, PRICE_INCREASE, ...) is acknowledged without
    touching the ledger.
    """
    # ── Parse envelope ────────────────────────────────────────────────────
    try:
        body = await request.body()
        payload = json.loads(body.decode("utf-8"))
        signed_payload = payload["signedPayload"]
    except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError) as e:
        logger.error("Invalid App Store webhook payload: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": ErrorCodes.ENT_MALFORMED_PAYLOAD,
                "message": "Invalid JSON payload",
            },
        )

    ingest_service = WebhookIngestService(db, verifier)

    # ── Verify, decode and apply ──────────────────────────────────────────
    try:
        result = await ingest_service.ingest(signed_payload)
        await db.commit()
    except SignatureInvalid as e:
        await db.rollback()
        logger.warning("Rejected App Store webhook: %s", e.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": e.code, "message": "Invalid signed payload"},
        )
    except MalformedNotification as e:
        await db.rollback()
        logger.error("Undecodable App Store notification: %s", e.message)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": "Malformed notification"},
        )
    except Exception:
        logger.exception("App Store webhook processing error")
        await db.rollback()
        # Return 500 so Apple will retry
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "Error processing webhook",
            },
        )

    if result.summary_changed:
        await EntitlementService(db).refresh_cache(result.user_id)

    return WebhookAck(received=True, outcome=result.outcome.value)
