"""
Local Entitlement Cache
=======================

Durable key-value snapshot of the last known entitlement on the device,
stored in Redis under one key per account.

Staleness is advisory: entries are stored without a Redis expiry so a
stale entry can still be shown while a refresh runs. A stale entry is
never used to decide a new purchase.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from redis.asyncio import Redis

from app.config import settings
from app.services.cache import CacheKeys
from app.utils.helpers import as_utc, format_datetime, parse_datetime, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """``{isAdFree, lastChecked}`` plus what is needed to re-check expiry."""

    is_ad_free: bool
    last_checked: datetime
    product_type: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_fresh(self, ttl: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return now - as_utc(self.last_checked) < ttl

    def to_json(self) -> str:
        return json.dumps({
            "isAdFree": self.is_ad_free,
            "lastChecked": format_datetime(self.last_checked),
            "productType": self.product_type,
            "expiresAt": format_datetime(self.expires_at),
        })

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        last_checked = parse_datetime(data["lastChecked"])
        if last_checked is None:
            raise ValueError("lastChecked missing")
        return cls(
            is_ad_free=bool(data["isAdFree"]),
            last_checked=last_checked,
            product_type=data.get("productType"),
            expires_at=parse_datetime(data.get("expiresAt")),
        )


class LocalEntitlementCache:
    """Single-writer entitlement snapshot for one account on one device."""

    def __init__(self, client: Redis, user_id: str, ttl_seconds: Optional[int] = None):
        self.client = client
        self.key = CacheKeys.device_entitlement(user_id)
        self.ttl = timedelta(
            seconds=settings.ENTITLEMENT_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        )

    async def get(self) -> Optional[CacheEntry]:
        """
        Cached entry, or None if absent.

        Unreadable entries and storage errors read as absent.
        """
        try:
            raw = await self.client.get(self.key)
        except Exception as e:
            logger.warning("Local entitlement cache read failed: %s", e)
            return None

        if raw is None:
            return None

        try:
            return CacheEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable local entitlement entry: %s", e)
            return None

    async def set(self, entry: CacheEntry) -> bool:
        """
        Overwrite the entry with a single ``SET``.

        Returns:
            True if written, False on storage error.
        """
        try:
            await self.client.set(self.key, entry.to_json())
            return True
        except Exception as e:
            logger.warning("Local entitlement cache write failed: %s", e)
            return False

    async def clear(self) -> bool:
        """Remove the entry (sign-out)."""
        try:
            await self.client.delete(self.key)
            return True
        except Exception as e:
            logger.warning("Local entitlement cache clear failed: %s", e)
            return False

    def is_fresh(self, entry: CacheEntry, now: Optional[datetime] = None) -> bool:
        return entry.is_fresh(self.ttl, now)
