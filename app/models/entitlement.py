"""
Entitlement Models
==================

Ledger of verified purchase transactions and the per-user entitlement
summary derived from it.

``PurchaseRecord`` rows are never deleted; they are upserted in place by
``transaction_id``. ``EntitlementSummary`` is written only by
``EntitlementLedger.recompute_summary``.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Index,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONType, TimestampMixin


class StoreEnvironment(str, Enum):
    """Vendor environment a transaction was made in."""
    PRODUCTION = "production"
    SANDBOX = "sandbox"


class ProductType(str, Enum):
    """Kind of entitlement a summary is backed by."""
    LIFETIME = "lifetime"
    SUBSCRIPTION = "subscription"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class PurchaseRecord(Base, TimestampMixin):
    """
    One verified purchase transaction (Ledger row).

    ``last_notification_date`` is the vendor's event time, used for
    last-write-wins ordering; never the arrival time.
    """

    __tablename__ = "purchase_records"

    # Primary Key (vendor transaction id, the idempotency key)
    transaction_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )

    # Owning account. NULL only until the transaction is associated.
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
    )

    original_transaction_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    product_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    app_account_token: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    # Dates
    purchase_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    original_purchase_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    expires_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,  # Null for lifetime (non-consumable) purchases
    )
    revocation_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Lifecycle
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    last_notification_type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    last_notification_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    environment: Mapped[StoreEnvironment] = mapped_column(
        SQLEnum(
            StoreEnvironment,
            name="storeenvironment",
            values_callable=_enum_values,
        ),
        default=StoreEnvironment.PRODUCTION,
        nullable=False,
    )

    # Decoded transaction claims, kept for support/debugging
    raw_transaction: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_purchase_records_user_active", "user_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<PurchaseRecord {self.transaction_id} user={self.user_id} "
            f"product={self.product_id} active={self.is_active}>"
        )


class EntitlementSummary(Base, TimestampMixin):
    """
    Derived per-user entitlement projection.

    This is the only row the rest of the application reads.
    """

    __tablename__ = "entitlement_summaries"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
    )
    ad_free: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    product_type: Mapped[Optional[ProductType]] = mapped_column(
        SQLEnum(
            ProductType,
            name="producttype",
            values_callable=_enum_values,
        ),
        nullable=True,
    )
    purchase_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_purchase_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    premium_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    recomputed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<EntitlementSummary user={self.user_id} ad_free={self.ad_free}>"
