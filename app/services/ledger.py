"""
Entitlement Ledger Service
==========================

Writes to the purchase ledger and the derived entitlement summary.

Handles:
- Conditional upsert of a purchase record by ``transaction_id``
  (last-write-wins by vendor event time, in a single statement)
- Associating an unowned record with an account
- Recomputing a user's summary from their ledger rows

``recompute_summary`` is the only code path that writes
``entitlement_summaries``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence
import uuid

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.entitlement import EntitlementSummary, PurchaseRecord, StoreEnvironment
from app.services.reconciliation import SummarySnapshot, compute_summary
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpsertOutcome:
    """Result of a conditional ledger upsert."""

    transaction_id: str
    applied: bool


class EntitlementLedger:
    """Service for ledger and summary persistence."""

    def __init__(self, db: AsyncSession, environment: Optional[StoreEnvironment] = None):
        self.db = db
        self.environment = environment or StoreEnvironment(settings.APP_STORE_ENVIRONMENT)

    # -------------------------------------------------------------------------
    # Dialect helpers
    # -------------------------------------------------------------------------

    def _insert(self):
        """``INSERT`` construct for the bound dialect (both support ON CONFLICT)."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise RuntimeError(f"Unsupported database dialect for ledger upsert: {dialect}")

    # -------------------------------------------------------------------------
    # Ledger writes
    # -------------------------------------------------------------------------

    async def upsert_purchase_record(
        self,
        *,
        transaction_id: str,
        original_transaction_id: str,
        product_id: str,
        purchase_date: datetime,
        expires_date: Optional[datetime],
        is_active: bool,
        notification_type: str,
        notification_date: datetime,
        environment: StoreEnvironment,
        user_id: Optional[uuid.UUID] = None,
        original_purchase_date: Optional[datetime] = None,
        revocation_date: Optional[datetime] = None,
        app_account_token: Optional[uuid.UUID] = None,
        raw_transaction: Optional[dict[str, Any]] = None,
    ) -> UpsertOutcome:
        """
        Insert a purchase record, or update it if this event is newer.

        The existing row is overwritten only when the incoming event time
        is strictly newer than the stored ``last_notification_date``, or
        equal to it and the incoming event deactivates an active row.
        Anything else is a duplicate and leaves the row untouched. The
        comparison happens inside the database in one statement, so
        concurrent deliveries converge without application locks.

        ``user_id`` is only written on insert; use ``associate_user`` for
        existing rows.

        Returns:
            UpsertOutcome with ``applied=False`` for duplicates.
        """
        insert = self._insert()
        table = PurchaseRecord.__table__
        now = utc_now()

        stmt = insert(table).values(
            transaction_id=transaction_id,
            original_transaction_id=original_transaction_id,
            user_id=user_id,
            product_id=product_id,
            app_account_token=app_account_token,
            purchase_date=purchase_date,
            original_purchase_date=original_purchase_date,
            expires_date=expires_date,
            revocation_date=revocation_date,
            is_active=is_active,
            last_notification_type=notification_type,
            last_notification_date=notification_date,
            environment=environment,
            raw_transaction=raw_transaction,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.transaction_id],
            set_={
                "original_transaction_id": excluded.original_transaction_id,
                "product_id": excluded.product_id,
                "app_account_token": func.coalesce(
                    excluded.app_account_token, table.c.app_account_token
                ),
                "purchase_date": excluded.purchase_date,
                "original_purchase_date": excluded.original_purchase_date,
                "expires_date": excluded.expires_date,
                "revocation_date": excluded.revocation_date,
                "is_active": excluded.is_active,
                "last_notification_type": excluded.last_notification_type,
                "last_notification_date": excluded.last_notification_date,
                "environment": excluded.environment,
                "raw_transaction": excluded.raw_transaction,
                "updated_at": excluded.updated_at,
            },
            where=or_(
                table.c.last_notification_date < excluded.last_notification_date,
                and_(
                    table.c.last_notification_date == excluded.last_notification_date,
                    table.c.is_active.is_(True),
                    excluded.is_active.is_(False),
                ),
            ),
        ).returning(table.c.transaction_id)

        result = await self.db.execute(stmt)
        applied = result.scalar_one_or_none() is not None
        return UpsertOutcome(transaction_id=transaction_id, applied=applied)

    async def associate_user(
        self,
        transaction_id: str,
        user_id: uuid.UUID,
    ) -> Optional[uuid.UUID]:
        """
        Attach an owner to a record that has none.

        An owned record is never reassigned; a conflicting owner is logged.

        Returns:
            The record's owner after the call (None if the record is missing).
        """
        result = await self.db.execute(
            update(PurchaseRecord)
            .where(
                PurchaseRecord.transaction_id == transaction_id,
                PurchaseRecord.user_id.is_(None),
            )
            .values(user_id=user_id)
            .returning(PurchaseRecord.transaction_id)
            .execution_options(synchronize_session=False)
        )
        if result.scalar_one_or_none() is not None:
            return user_id

        owner = await self.db.scalar(
            select(PurchaseRecord.user_id).where(
                PurchaseRecord.transaction_id == transaction_id
            )
        )
        if owner is not None and owner != user_id:
            logger.warning(
                "Refusing to reassign transaction_id=%s owner=%s requested=%s",
                transaction_id,
                owner,
                user_id,
            )
        return owner

    async def resolve_user_id(
        self,
        app_account_token: Optional[uuid.UUID],
        original_transaction_id: Optional[str],
    ) -> Optional[uuid.UUID]:
        """
        Work out which account a vendor transaction belongs to.

        The purchase is started with the account id as ``appAccountToken``;
        renewals without it inherit the owner of an earlier transaction
        in the same subscription group.
        """
        if app_account_token is not None:
            return app_account_token
        if not original_transaction_id:
            return None

        return await self.db.scalar(
            select(PurchaseRecord.user_id)
            .where(
                PurchaseRecord.original_transaction_id == original_transaction_id,
                PurchaseRecord.user_id.is_not(None),
            )
            .limit(1)
        )

    # -------------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------------

    async def list_records(self, user_id: uuid.UUID) -> Sequence[PurchaseRecord]:
        """All ledger rows owned by a user, newest purchase first."""
        result = await self.db.execute(
            select(PurchaseRecord)
            .where(PurchaseRecord.user_id == user_id)
            .order_by(PurchaseRecord.purchase_date.desc())
            # Rows are written with Core upserts that bypass the identity map
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def recompute_summary(self, user_id: uuid.UUID) -> SummarySnapshot:
        """
        Recompute and store a user's entitlement summary.

        Pure over the user's current ledger rows; running it twice with
        no ledger change writes the same values.
        """
        records = await self.list_records(user_id)
        snapshot = compute_summary(records, environment=self.environment)

        insert = self._insert()
        table = EntitlementSummary.__table__
        now = utc_now()
        values = {
            "ad_free": snapshot.ad_free,
            "product_type": snapshot.product_type,
            "purchase_date": snapshot.purchase_date,
            "last_purchase_date": snapshot.last_purchase_date,
            "premium_expires_at": snapshot.premium_expires_at,
            "recomputed_at": now,
            "updated_at": now,
        }
        stmt = insert(table).values(user_id=user_id, created_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id],
            set_=values,
        )
        await self.db.execute(stmt)

        logger.info(
            "Summary recomputed: user=%s ad_free=%s product_type=%s records=%d",
            user_id,
            snapshot.ad_free,
            snapshot.product_type.value if snapshot.product_type else None,
            len(records),
        )
        return snapshot

    async def get_summary(self, user_id: uuid.UUID) -> Optional[EntitlementSummary]:
        """Stored summary row, or None if the user never had one."""
        return await self.db.get(EntitlementSummary, user_id, populate_existing=True)
