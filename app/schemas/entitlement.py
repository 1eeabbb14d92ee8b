"""
Entitlement Schemas
===================

Pydantic schemas for the entitlement and App Store webhook endpoints.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field


class PurchaseSource(str, Enum):
    """Which device flow produced a committed transaction."""
    PURCHASE = "purchase"
    RESTORE = "restore"


# ─── Summary ─────────────────────────────────────────────────────────────────


class EntitlementSummaryData(BaseModel):
    """A user's entitlement as read by the app."""

    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    ad_free: bool = False
    product_type: Optional[str] = None
    purchase_date: Optional[datetime] = None
    last_purchase_date: Optional[datetime] = None
    premium_expires_at: Optional[datetime] = None
    recomputed_at: Optional[datetime] = None


class EntitlementSummaryResponse(BaseModel):
    """Response schema for ``GET /entitlements/me``."""

    success: bool = True
    data: EntitlementSummaryData


# ─── Purchase commit ─────────────────────────────────────────────────────────


class CommitPurchaseRequest(BaseModel):
    """Signed StoreKit transaction sent by the device after purchase/restore."""

    signed_transaction: str = Field(min_length=1, description="JWS transaction")
    source: PurchaseSource = PurchaseSource.PURCHASE


class CommitPurchaseData(BaseModel):
    """Result of committing a transaction to the ledger."""

    transaction_id: str
    applied: bool
    summary: EntitlementSummaryData


class CommitPurchaseResponse(BaseModel):
    """Response schema for ``POST /entitlements/purchases``."""

    success: bool = True
    data: CommitPurchaseData


# ─── Ledger ──────────────────────────────────────────────────────────────────


class PurchaseRecordData(BaseModel):
    """A ledger row as exposed to its owner."""

    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: datetime
    expires_date: Optional[datetime] = None
    revocation_date: Optional[datetime] = None
    is_active: bool
    last_notification_type: str
    last_notification_date: datetime
    environment: str


class PurchaseRecordListResponse(BaseModel):
    """Response schema for ``GET /entitlements/me/purchases``."""

    success: bool = True
    data: list[PurchaseRecordData]


# ─── Webhook ─────────────────────────────────────────────────────────────────


class WebhookAck(BaseModel):
    """Acknowledgement returned to the App Store."""

    received: bool = True
    outcome: Optional[str] = None
