"""
Webhook Ingest Service
======================

Applies App Store Server Notifications (v2) to the entitlement ledger.

Per notification:
    verify -> decode -> apply (conditional upsert) -> recompute summary

The service holds no state between calls; the ledger's conditional
upsert is what makes concurrent and repeated deliveries converge.
Committing is left to the caller.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DuplicateNotification
from app.services.app_store import AppStoreSignedPayloadVerifier, DecodedNotification
from app.services.ledger import EntitlementLedger
from app.services.reconciliation import is_handled_notification, resolve_is_active

logger = logging.getLogger(__name__)


class IngestOutcome(str, Enum):
    """What happened to a notification."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNASSOCIATED = "unassociated"


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one notification, logged and returned to the endpoint."""

    notification_type: str
    outcome: IngestOutcome
    transaction_id: Optional[str] = None
    user_id: Optional[uuid.UUID] = None

    @property
    def summary_changed(self) -> bool:
        return self.outcome == IngestOutcome.APPLIED and self.user_id is not None


class WebhookIngestService:
    """Service that turns verified notifications into ledger mutations."""

    def __init__(self, db: AsyncSession, verifier: AppStoreSignedPayloadVerifier):
        self.db = db
        self.verifier = verifier
        self.ledger = EntitlementLedger(db)

    async def ingest(self, signed_payload: str) -> IngestResult:
        """
        Verify, decode and apply a ``signedPayload``.

        Raises:
            SignatureInvalid: The payload is not authentically from Apple.
            MalformedNotification: The payload could not be decoded.
        """
        notification = self.verifier.decode_notification(signed_payload)
        try:
            result = await self.apply(notification)
        except DuplicateNotification as e:
            result = IngestResult(
                notification_type=notification.notification_type,
                outcome=IngestOutcome.DUPLICATE,
                transaction_id=e.transaction_id,
            )

        logger.info(
            "transaction_id=%s notification_type=%s outcome=%s",
            result.transaction_id,
            result.notification_type,
            result.outcome.value,
        )
        return result

    async def apply(self, notification: DecodedNotification) -> IngestResult:
        """
        Apply an already verified notification.

        Raises:
            DuplicateNotification: Stored state is as new or newer.
        """
        notification_type = notification.notification_type
        transaction = notification.transaction

        if transaction is None or not is_handled_notification(notification_type):
            # TEST, CONSUMPTION_REQUEST, PRICE_INCREASE, ...: acknowledge only
            return IngestResult(
                notification_type=notification_type,
                outcome=IngestOutcome.IGNORED,
                transaction_id=transaction.transaction_id if transaction else None,
            )

        user_id = await self.ledger.resolve_user_id(
            transaction.app_account_token,
            transaction.original_transaction_id,
        )

        upsert = await self.ledger.upsert_purchase_record(
            transaction_id=transaction.transaction_id,
            original_transaction_id=transaction.original_transaction_id,
            product_id=transaction.product_id,
            purchase_date=transaction.purchase_date,
            original_purchase_date=transaction.original_purchase_date,
            expires_date=transaction.expires_date,
            revocation_date=transaction.revocation_date,
            is_active=resolve_is_active(notification_type, transaction.revocation_date),
            notification_type=notification_type,
            notification_date=notification.signed_date,
            environment=transaction.environment,
            user_id=user_id,
            app_account_token=transaction.app_account_token,
            raw_transaction=transaction.claims,
        )

        if not upsert.applied:
            raise DuplicateNotification(
                f"{notification_type} for {transaction.transaction_id} is not newer than stored state",
                transaction_id=transaction.transaction_id,
            )

        if user_id is None:
            # Kept in the ledger; the summary is computed once the
            # owning device commits the purchase.
            return IngestResult(
                notification_type=notification_type,
                outcome=IngestOutcome.UNASSOCIATED,
                transaction_id=transaction.transaction_id,
            )

        # Row may predate the owner being known
        owner = await self.ledger.associate_user(transaction.transaction_id, user_id)
        if owner is not None:
            await self.ledger.recompute_summary(owner)

        return IngestResult(
            notification_type=notification_type,
            outcome=IngestOutcome.APPLIED,
            transaction_id=transaction.transaction_id,
            user_id=owner,
        )
