"""
Device Client
=============

Device-side half of the entitlement subsystem: purchase flow, local
entitlement cache and the HTTP client for the entitlement API.
"""

from app.client.events import EntitlementChanged, EntitlementEvents, EntitlementSubscription
from app.client.framework import (
    PurchaseFramework,
    StoreProduct,
    StoreTransaction,
    TransactionState,
    TransactionUpdate,
)
from app.client.local_cache import CacheEntry, LocalEntitlementCache
from app.client.purchase_client import (
    EntitlementStatus,
    InitResult,
    PurchaseClient,
    PurchaseOutcome,
    PurchaseResult,
    RestoreOutcome,
    RestoreResult,
    StatusSource,
)
from app.client.remote_store import HttpEntitlementStore, RemoteEntitlementStore, RemoteSummary

__all__ = [
    "CacheEntry",
    "EntitlementChanged",
    "EntitlementEvents",
    "EntitlementStatus",
    "EntitlementSubscription",
    "HttpEntitlementStore",
    "InitResult",
    "LocalEntitlementCache",
    "PurchaseClient",
    "PurchaseFramework",
    "PurchaseOutcome",
    "PurchaseResult",
    "RemoteEntitlementStore",
    "RemoteSummary",
    "RestoreOutcome",
    "RestoreResult",
    "StatusSource",
    "StoreProduct",
    "StoreTransaction",
    "TransactionState",
    "TransactionUpdate",
]
