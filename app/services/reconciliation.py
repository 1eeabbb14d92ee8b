"""
Reconciliation Policy
=====================

Pure decision logic that folds a user's purchase records into a single
entitlement summary. Used by the server when recomputing the summary
table and by the device client when serving cached or remote summaries,
so both sides agree on what "entitled" means.

Nothing here touches the database, Redis or the network.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from app.models.entitlement import ProductType, StoreEnvironment
from app.utils.helpers import as_utc, utc_now


# =============================================================================
# Notification classification
# =============================================================================

# Lifecycle events after which the transaction entitles (until expiry)
ACTIVATING_NOTIFICATIONS = frozenset({
    "SUBSCRIBED",
    "DID_RENEW",
    "ONE_TIME_CHARGE",
    "RENEWAL_EXTENDED",
    "OFFER_REDEEMED",
    "REFUND_REVERSED",
    # Auto-renew switched off/on or plan changed: still entitled until expires_date
    "DID_CHANGE_RENEWAL_STATUS",
    "DID_CHANGE_RENEWAL_PREF",
    # Written by the purchase/restore commit endpoint
    "CLIENT_PURCHASE",
    "CLIENT_RESTORE",
})

# Lifecycle events after which the transaction never entitles
DEACTIVATING_NOTIFICATIONS = frozenset({
    "DID_FAIL_TO_RENEW",
    "EXPIRED",
    "GRACE_PERIOD_EXPIRED",
    "REFUND",
    "REVOKE",
})


def is_handled_notification(notification_type: str) -> bool:
    """True if the notification type mutates the ledger."""
    return (
        notification_type in ACTIVATING_NOTIFICATIONS
        or notification_type in DEACTIVATING_NOTIFICATIONS
    )


def resolve_is_active(
    notification_type: str,
    revocation_date: Optional[datetime] = None,
) -> bool:
    """
    Decide ``is_active`` for a record after a lifecycle event.

    Refund/revoke deactivate regardless of ``expires_date``; a
    transaction carrying a revocation date is never active.
    """
    if revocation_date is not None:
        return False
    if notification_type in DEACTIVATING_NOTIFICATIONS:
        return False
    return notification_type in ACTIVATING_NOTIFICATIONS


# =============================================================================
# Summary computation
# =============================================================================

@dataclass(frozen=True)
class SummarySnapshot:
    """Result of folding a user's records. Mirrors ``EntitlementSummary``."""

    ad_free: bool = False
    product_type: Optional[ProductType] = None
    purchase_date: Optional[datetime] = None
    last_purchase_date: Optional[datetime] = None
    premium_expires_at: Optional[datetime] = None

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["product_type"] = self.product_type.value if self.product_type else None
        return data


NOT_ENTITLED = SummarySnapshot()


def _environment_of(record: Any) -> StoreEnvironment:
    value = getattr(record, "environment", StoreEnvironment.PRODUCTION)
    if isinstance(value, StoreEnvironment):
        return value
    return StoreEnvironment(str(value).lower())


def is_currently_entitling(
    record: Any,
    now: Optional[datetime] = None,
    environment: StoreEnvironment = StoreEnvironment.PRODUCTION,
) -> bool:
    """
    A record entitles iff it is active, unexpired and belongs to the
    deployment's environment.
    """
    now = as_utc(now) if now is not None else utc_now()

    if not record.is_active:
        return False
    if _environment_of(record) != environment:
        return False

    expires = as_utc(record.expires_date)
    return expires is None or expires > now


def compute_summary(
    records: Iterable[Any],
    *,
    now: Optional[datetime] = None,
    environment: StoreEnvironment = StoreEnvironment.PRODUCTION,
) -> SummarySnapshot:
    """
    Fold a user's purchase records into an entitlement summary.

    Args:
        records: Ledger rows (ORM objects or anything with the same
            attributes) for a single user.
        now: Evaluation time, defaults to the current UTC time.
        environment: Only records from this environment can entitle.

    Returns:
        ``SummarySnapshot``; ``NOT_ENTITLED`` when nothing entitles.
    """
    now = as_utc(now) if now is not None else utc_now()
    entitling = [
        r for r in records
        if is_currently_entitling(r, now=now, environment=environment)
    ]
    if not entitling:
        return NOT_ENTITLED

    purchase_dates = [as_utc(r.purchase_date) for r in entitling]
    expiries = [as_utc(r.expires_date) for r in entitling]
    has_lifetime = any(exp is None for exp in expiries)

    return SummarySnapshot(
        ad_free=True,
        product_type=ProductType.LIFETIME if has_lifetime else ProductType.SUBSCRIPTION,
        purchase_date=min(purchase_dates),
        last_purchase_date=max(purchase_dates),
        premium_expires_at=None if has_lifetime else min(expiries),
    )


def effective_ad_free(
    is_ad_free: bool,
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """
    Re-check a previously computed summary at read time.

    A summary whose subscription expiry has passed no longer entitles,
    even if nothing has recomputed it yet.
    """
    if not is_ad_free:
        return False
    if expires_at is None:
        return True
    now = as_utc(now) if now is not None else utc_now()
    return as_utc(expires_at) > now
