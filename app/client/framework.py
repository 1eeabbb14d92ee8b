"""
Purchase Framework Interface
============================

The slice of the platform's native purchase framework (StoreKit) the
purchase client depends on. Implementations wrap the native bridge;
tests use an in-memory fake.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Sequence


class TransactionState(str, Enum):
    """State a transaction update reports."""
    PURCHASED = "purchased"
    PENDING = "pending"      # Ask to Buy / SCA, completes later
    CANCELLED = "cancelled"  # User dismissed the sheet
    FAILED = "failed"


@dataclass(frozen=True)
class StoreProduct:
    """Catalog entry returned by the platform."""

    product_id: str
    title: str = ""
    description: str = ""
    display_price: str = ""
    currency: str = ""
    is_subscription: bool = False


@dataclass(frozen=True)
class StoreTransaction:
    """
    A completed transaction as delivered by the platform.

    ``signed_transaction`` is the vendor JWS the server re-verifies;
    ``verified`` is the platform's own on-device verification result.
    """

    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: datetime
    signed_transaction: str
    verified: bool = True
    expires_date: Optional[datetime] = None
    revocation_date: Optional[datetime] = None


@dataclass(frozen=True)
class TransactionUpdate:
    """Event delivered to transaction listeners."""

    state: TransactionState
    product_id: str
    transaction: Optional[StoreTransaction] = None
    error: Optional[str] = field(default=None)


TransactionListener = Callable[[TransactionUpdate], Awaitable[None]]


class PurchaseFramework(Protocol):
    """Native purchase framework, treated as slow and possibly unavailable."""

    async def connect(self) -> None:
        """Open the connection; raises ``ConnectionUnavailable`` on failure."""
        ...

    async def disconnect(self) -> None:
        ...

    async def fetch_products(self, product_ids: Sequence[str]) -> list[StoreProduct]:
        ...

    async def request_purchase(
        self,
        product_id: str,
        app_account_token: Optional[str] = None,
    ) -> None:
        """Present the purchase sheet. The outcome arrives via listeners."""
        ...

    def add_transaction_listener(self, listener: TransactionListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        ...

    async def finish_transaction(self, transaction: StoreTransaction) -> None:
        """Tell the platform the transaction has been delivered."""
        ...

    async def purchase_history(self) -> list[StoreTransaction]:
        """All transactions for the signed-in store account (restore)."""
        ...
