"""
Purchase Client
===============

Device-side purchase flow for the ad-free entitlement.

Talks to the platform purchase framework (catalog, purchase sheet,
transaction updates, purchase history) and commits every verified
transaction to the entitlement API before anything local changes.

Commit order for a completed transaction:
    1. Remote commit (server re-verifies, upserts the ledger,
       recomputes the summary). Required for success.
    2. ``finish_transaction`` on the platform. Skipped when step 1
       fails, so the platform redelivers the transaction next launch.
    3. Local cache write. Failure is logged only; the next status
       read repairs it.
    4. Change event to subscribers.

Every bounded step has a timeout and degrades to a result object; no
failure path reports the user as ad-free.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from app.client.events import EntitlementChanged, EntitlementEvents, EntitlementSubscription
from app.client.framework import (
    PurchaseFramework,
    StoreProduct,
    StoreTransaction,
    TransactionState,
    TransactionUpdate,
)
from app.client.local_cache import CacheEntry, LocalEntitlementCache
from app.client.remote_store import RemoteEntitlementStore, RemoteSummary
from app.config import settings
from app.core.errors import (
    ConnectionUnavailable,
    EntitlementError,
    EntitlementTimeout,
    ErrorCodes,
    ProductNotFound,
    PurchaseCancelled,
    RemoteStoreError,
    VerificationFailed,
)
from app.services.reconciliation import effective_ad_free
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Results
# =============================================================================

class PurchaseOutcome(str, Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RestoreOutcome(str, Enum):
    RESTORED = "restored"
    NONE_FOUND = "none_found"
    FAILED = "failed"


class StatusSource(str, Enum):
    """
    Where an ``EntitlementStatus`` came from.

    Besides ``CACHE`` and ``REMOTE`` there is a third value,
    ``DEFAULT``: no cache entry and the remote read failed. It always
    carries ``is_ad_free=False``. Consumers switching on the source
    must handle it.
    """

    CACHE = "cache"
    REMOTE = "remote"
    DEFAULT = "default"


@dataclass(frozen=True)
class InitResult:
    success: bool
    products: list[StoreProduct] = field(default_factory=list)
    error_code: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PurchaseResult:
    outcome: PurchaseOutcome
    product_id: str
    transaction_id: Optional[str] = None
    is_ad_free: bool = False
    error_code: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RestoreResult:
    outcome: RestoreOutcome
    restored_count: int = 0
    entitled: bool = False
    error_code: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class EntitlementStatus:
    is_ad_free: bool
    source: StatusSource
    product_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    stale: bool = False


def _failed(product_id: str, error: EntitlementError) -> PurchaseResult:
    return PurchaseResult(
        outcome=PurchaseOutcome.FAILED,
        product_id=product_id,
        error_code=error.code,
        error=error.message,
    )


# =============================================================================
# Client
# =============================================================================

class PurchaseClient:
    """
    Entitlement purchase flow for one signed-in account on one device.

    Construct one per session and pass it to whatever needs it; all
    collaborators are injected.
    """

    def __init__(
        self,
        framework: PurchaseFramework,
        remote_store: RemoteEntitlementStore,
        cache: LocalEntitlementCache,
        events: Optional[EntitlementEvents] = None,
        *,
        product_ids: Optional[Iterable[str]] = None,
        app_account_token: Optional[str] = None,
        connect_timeout: float = 5.0,
        catalog_timeout: float = 3.0,
        purchase_timeout: float = 300.0,
        restore_timeout: float = 60.0,
        status_timeout: float = 10.0,
    ):
        self.framework = framework
        self.remote_store = remote_store
        self.cache = cache
        self.events = events or EntitlementEvents()
        self.product_ids = frozenset(
            settings.entitlement_product_ids_list if product_ids is None else product_ids
        )
        self.app_account_token = app_account_token

        self.connect_timeout = connect_timeout
        self.catalog_timeout = catalog_timeout
        self.purchase_timeout = purchase_timeout
        self.restore_timeout = restore_timeout
        self.status_timeout = status_timeout

        self._connected = False
        self._products: dict[str, StoreProduct] = {}
        self._remove_listener = None
        self._init_lock = asyncio.Lock()
        self._commit_lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Future] = {}
        self._background: set[asyncio.Task] = set()
        # Bumped by every commit; stale remote reads must not overwrite it
        self._generation = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def products(self) -> list[StoreProduct]:
        return list(self._products.values())

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    async def initialize(self) -> InitResult:
        """
        Connect to the purchase framework and load the catalog.

        Never raises: a timeout or unavailable framework returns a soft
        failure and purchases stay disabled. Safe to call repeatedly.
        """
        async with self._init_lock:
            if self._connected:
                return InitResult(success=True, products=self.products)

            try:
                await asyncio.wait_for(self.framework.connect(), self.connect_timeout)
            except asyncio.TimeoutError:
                logger.warning("Purchase framework connect timed out after %.1fs", self.connect_timeout)
                return InitResult(
                    success=False,
                    error_code=ErrorCodes.ENT_TIMEOUT,
                    error="Store connection timed out",
                )
            except Exception as e:
                logger.warning("Purchase framework unavailable: %s", e)
                return InitResult(
                    success=False,
                    error_code=ErrorCodes.ENT_CONNECTION_UNAVAILABLE,
                    error=str(e) or "Store unavailable",
                )

            self._connected = True
            self._remove_listener = self.framework.add_transaction_listener(
                self._on_transaction_update
            )
            await self._load_catalog()
            return InitResult(success=True, products=self.products)

    async def _load_catalog(self) -> None:
        try:
            products = await asyncio.wait_for(
                self.framework.fetch_products(sorted(self.product_ids)),
                self.catalog_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Product catalog fetch timed out after %.1fs", self.catalog_timeout)
            return
        except Exception as e:
            logger.warning("Product catalog fetch failed: %s", e)
            return

        self._products = {
            p.product_id: p for p in products if p.product_id in self.product_ids
        }
        logger.info("Loaded %d of %d entitlement products", len(self._products), len(self.product_ids))

    async def _ensure_product(self, product_id: str) -> Optional[StoreProduct]:
        if product_id not in self.product_ids:
            return None
        if product_id not in self._products:
            # Catalog may have timed out during initialize
            await self._load_catalog()
        return self._products.get(product_id)

    # -------------------------------------------------------------------------
    # Purchase
    # -------------------------------------------------------------------------

    async def _already_entitled(self, product: StoreProduct) -> bool:
        """Fresh remote check; a lifetime owner never needs to buy again."""
        try:
            summary = await asyncio.wait_for(
                self.remote_store.fetch_summary(), self.status_timeout
            )
        except (EntitlementError, asyncio.TimeoutError) as e:
            logger.info("Skipping already-entitled check, summary unavailable: %s", e)
            return False

        if not effective_ad_free(summary.is_ad_free, summary.premium_expires_at):
            return False
        return summary.product_type == "lifetime" or product.is_subscription

    async def purchase(self, product_id: str) -> PurchaseResult:
        """
        Buy ``product_id`` and commit the resulting transaction.

        Returns:
            PurchaseResult; ``success`` only once the server has
            recorded the transaction, ``cancelled`` if the user backed out.
        """
        init = await self.initialize()
        if not init.success:
            return PurchaseResult(
                outcome=PurchaseOutcome.FAILED,
                product_id=product_id,
                error_code=init.error_code,
                error=init.error,
            )

        product = await self._ensure_product(product_id)
        if product is None:
            return _failed(product_id, ProductNotFound(f"Unknown product {product_id}"))

        if await self._already_entitled(product):
            return PurchaseResult(
                outcome=PurchaseOutcome.FAILED,
                product_id=product_id,
                is_ad_free=True,
                error_code=ErrorCodes.ENT_ALREADY_ENTITLED,
                error="Already ad-free",
            )

        if product_id in self._pending:
            return PurchaseResult(
                outcome=PurchaseOutcome.FAILED,
                product_id=product_id,
                error_code=ErrorCodes.VALIDATION_ERROR,
                error="Purchase already in progress",
            )

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[product_id] = future
        try:
            await self.framework.request_purchase(product_id, self.app_account_token)
            return await asyncio.wait_for(future, self.purchase_timeout)
        except PurchaseCancelled:
            logger.info("Purchase cancelled by user: product=%s", product_id)
            return PurchaseResult(outcome=PurchaseOutcome.CANCELLED, product_id=product_id)
        except asyncio.TimeoutError:
            # A late completion is still committed by the listener
            logger.warning("Purchase timed out: product=%s", product_id)
            return _failed(product_id, EntitlementTimeout("Purchase timed out"))
        except EntitlementError as e:
            logger.warning("Purchase failed: product=%s error=%s", product_id, e.message)
            return _failed(product_id, e)
        except Exception as e:
            logger.warning("Purchase request failed: product=%s error=%s", product_id, e)
            return _failed(product_id, ConnectionUnavailable(str(e) or "Store unavailable"))
        finally:
            self._pending.pop(product_id, None)

    async def _on_transaction_update(self, update: TransactionUpdate) -> None:
        """Listener for every platform transaction update."""
        future = self._pending.get(update.product_id)
        waiting = future is not None and not future.done()

        if update.state == TransactionState.PENDING:
            # Ask to Buy: the approved transaction arrives later
            logger.info("Purchase pending approval: product=%s", update.product_id)
            return

        if update.state == TransactionState.CANCELLED:
            if waiting:
                future.set_exception(PurchaseCancelled())
            return

        if update.state == TransactionState.FAILED:
            if waiting:
                future.set_exception(ConnectionUnavailable(update.error or "Purchase failed"))
            return

        try:
            result = await self._complete_transaction(
                update.transaction,
                source="purchase" if waiting else "transaction",
            )
        except Exception as e:
            logger.exception("Transaction update failed: product=%s", update.product_id)
            result = _failed(update.product_id, RemoteStoreError(str(e) or type(e).__name__))
        if waiting and not future.done():
            future.set_result(result)

    async def _complete_transaction(
        self,
        transaction: Optional[StoreTransaction],
        source: str,
    ) -> PurchaseResult:
        if transaction is None or not transaction.verified:
            product_id = transaction.product_id if transaction else ""
            logger.warning(
                "Discarding unverified transaction: transaction_id=%s product=%s",
                transaction.transaction_id if transaction else None,
                product_id,
            )
            return _failed(product_id, VerificationFailed("Transaction failed verification"))

        if transaction.product_id not in self.product_ids:
            logger.info("Ignoring transaction for unrelated product %s", transaction.product_id)
            return _failed(transaction.product_id, ProductNotFound(transaction.product_id))

        try:
            summary = await self._commit(transaction, source)
        except (VerificationFailed, RemoteStoreError) as e:
            logger.error(
                "Transaction not committed, left unfinished: transaction_id=%s error=%s",
                transaction.transaction_id,
                e.message,
            )
            return _failed(transaction.product_id, e)

        return PurchaseResult(
            outcome=PurchaseOutcome.SUCCESS,
            product_id=transaction.product_id,
            transaction_id=transaction.transaction_id,
            is_ad_free=effective_ad_free(summary.is_ad_free, summary.premium_expires_at),
        )

    async def _commit(self, transaction: StoreTransaction, source: str) -> RemoteSummary:
        """Remote commit, finish, cache, publish. Raises if the remote step fails."""
        remote_source = "restore" if source == "restore" else "purchase"
        async with self._commit_lock:
            summary = await self.remote_store.commit_transaction(
                transaction.signed_transaction, remote_source
            )

            try:
                await self.framework.finish_transaction(transaction)
            except Exception as e:
                # Already recorded server-side; a redelivery is a no-op commit
                logger.warning(
                    "finish_transaction failed: transaction_id=%s error=%s",
                    transaction.transaction_id,
                    e,
                )

            await self._write_cache(summary)
            self._generation += 1

        self._publish(summary, source)
        logger.info(
            "Transaction committed: transaction_id=%s product=%s ad_free=%s source=%s",
            transaction.transaction_id,
            transaction.product_id,
            summary.is_ad_free,
            source,
        )
        return summary

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    async def restore_purchases(self) -> RestoreResult:
        """
        Re-commit every entitlement transaction in the store history.

        Each transaction is committed independently; if the caller
        cancels midway, the ones already committed stay committed.
        """
        init = await self.initialize()
        if not init.success:
            return RestoreResult(
                outcome=RestoreOutcome.FAILED,
                error_code=init.error_code,
                error=init.error,
            )

        try:
            history = await asyncio.wait_for(
                self.framework.purchase_history(), self.restore_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Purchase history timed out after %.1fs", self.restore_timeout)
            return RestoreResult(
                outcome=RestoreOutcome.FAILED,
                error_code=ErrorCodes.ENT_TIMEOUT,
                error="Restore timed out",
            )
        except Exception as e:
            logger.warning("Purchase history unavailable: %s", e)
            return RestoreResult(
                outcome=RestoreOutcome.FAILED,
                error_code=ErrorCodes.ENT_CONNECTION_UNAVAILABLE,
                error=str(e) or "Store unavailable",
            )

        relevant = [
            t for t in history
            if t.product_id in self.product_ids and t.verified
        ]
        if not relevant:
            logger.info("Restore found no entitlement purchases (%d in history)", len(history))
            return RestoreResult(outcome=RestoreOutcome.NONE_FOUND)

        restored = 0
        last_error: Optional[EntitlementError] = None
        summary: Optional[RemoteSummary] = None
        for transaction in relevant:
            try:
                summary = await self._commit(transaction, "restore")
                restored += 1
            except (VerificationFailed, RemoteStoreError) as e:
                logger.warning(
                    "Restore commit failed: transaction_id=%s error=%s",
                    transaction.transaction_id,
                    e.message,
                )
                last_error = e

        if summary is None:
            return RestoreResult(
                outcome=RestoreOutcome.FAILED,
                error_code=last_error.code if last_error else None,
                error=last_error.message if last_error else None,
            )

        return RestoreResult(
            outcome=RestoreOutcome.RESTORED,
            restored_count=restored,
            entitled=effective_ad_free(summary.is_ad_free, summary.premium_expires_at),
        )

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def get_entitlement_status(
        self,
        optimistic: bool = False,
        force_refresh: bool = False,
    ) -> EntitlementStatus:
        """
        Current entitlement for the UI.

        Args:
            optimistic: Return a stale cache entry immediately and refresh
                in the background.
            force_refresh: Ignore the cache and read the remote summary.

        Returns:
            EntitlementStatus; ``is_ad_free`` is False whenever nothing
            proves otherwise.
        """
        entry = await self.cache.get()
        generation = self._generation

        if entry is not None and not force_refresh:
            if self.cache.is_fresh(entry):
                return self._status_from_entry(entry, stale=False)
            if optimistic:
                self._schedule_refresh()
                return self._status_from_entry(entry, stale=True)

        try:
            summary = await asyncio.wait_for(
                self.remote_store.fetch_summary(), self.status_timeout
            )
        except (EntitlementError, asyncio.TimeoutError) as e:
            logger.warning("Remote entitlement read failed: %s", e)
            if entry is not None:
                return self._status_from_entry(entry, stale=True)
            return EntitlementStatus(is_ad_free=False, source=StatusSource.DEFAULT)

        await self._apply_remote(summary, previous=entry, generation=generation)
        return EntitlementStatus(
            is_ad_free=effective_ad_free(summary.is_ad_free, summary.premium_expires_at),
            source=StatusSource.REMOTE,
            product_type=summary.product_type,
            expires_at=summary.premium_expires_at,
        )

    def _status_from_entry(self, entry: CacheEntry, stale: bool) -> EntitlementStatus:
        return EntitlementStatus(
            is_ad_free=effective_ad_free(entry.is_ad_free, entry.expires_at),
            source=StatusSource.CACHE,
            product_type=entry.product_type,
            expires_at=entry.expires_at,
            stale=stale,
        )

    def _schedule_refresh(self) -> None:
        if any(not task.done() for task in self._background):
            return
        task = asyncio.create_task(self._refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh(self) -> None:
        previous = await self.cache.get()
        generation = self._generation
        try:
            summary = await asyncio.wait_for(
                self.remote_store.fetch_summary(), self.status_timeout
            )
        except (EntitlementError, asyncio.TimeoutError) as e:
            logger.warning("Background entitlement refresh failed: %s", e)
            return
        await self._apply_remote(summary, previous=previous, generation=generation)

    async def _apply_remote(
        self,
        summary: RemoteSummary,
        previous: Optional[CacheEntry],
        generation: int,
    ) -> None:
        async with self._commit_lock:
            if generation != self._generation:
                # A commit landed while this read was in flight
                return
            entry = await self._write_cache(summary)
        if previous is None or previous.is_ad_free != entry.is_ad_free:
            self._publish(summary, "remote")

    # -------------------------------------------------------------------------
    # Local state
    # -------------------------------------------------------------------------

    async def _write_cache(self, summary: RemoteSummary) -> CacheEntry:
        entry = CacheEntry(
            is_ad_free=effective_ad_free(summary.is_ad_free, summary.premium_expires_at),
            last_checked=utc_now(),
            product_type=summary.product_type,
            expires_at=summary.premium_expires_at,
        )
        if not await self.cache.set(entry):
            logger.warning("Local entitlement cache not updated; next read will refresh it")
        return entry

    def _publish(self, summary: RemoteSummary, source: str) -> None:
        self.events.publish(EntitlementChanged(
            is_ad_free=effective_ad_free(summary.is_ad_free, summary.premium_expires_at),
            product_type=summary.product_type,
            source=source,
            at=utc_now(),
        ))

    def subscribe(self) -> EntitlementSubscription:
        """Stream of entitlement changes for the UI."""
        return self.events.subscribe()

    async def close(self) -> None:
        """Detach from the framework and stop background work."""
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionUnavailable("Purchase client closed"))

        if self._connected:
            try:
                await self.framework.disconnect()
            except Exception as e:
                logger.warning("Purchase framework disconnect failed: %s", e)
            self._connected = False

        self.events.close()
