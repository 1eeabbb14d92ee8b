"""
Remote Entitlement Store Client
===============================

HTTP client for the entitlement API, used by the device-side purchase
client.

Handles:
- Committing a signed transaction (server verifies, upserts, recomputes)
- Fetching the account's entitlement summary

Transport errors and 5xx responses are retried with exponential
backoff; 4xx responses are final.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx

from app.config import settings
from app.core.errors import RemoteStoreError, VerificationFailed
from app.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteSummary:
    """Entitlement summary as returned by the API."""

    is_ad_free: bool
    product_type: Optional[str] = None
    premium_expires_at: Optional[datetime] = None
    purchase_date: Optional[datetime] = None
    last_purchase_date: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteSummary":
        return cls(
            is_ad_free=bool(data.get("ad_free", False)),
            product_type=data.get("product_type"),
            premium_expires_at=parse_datetime(data.get("premium_expires_at")),
            purchase_date=parse_datetime(data.get("purchase_date")),
            last_purchase_date=parse_datetime(data.get("last_purchase_date")),
        )


class RemoteEntitlementStore(Protocol):
    """What the purchase client needs from the server."""

    async def commit_transaction(self, signed_transaction: str, source: str) -> RemoteSummary:
        ...

    async def fetch_summary(self) -> RemoteSummary:
        ...


class HttpEntitlementStore:
    """``RemoteEntitlementStore`` over the REST API."""

    def __init__(
        self,
        base_url: Optional[str],
        access_token: str,
        *,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_attempts = max(1, max_attempts or settings.REMOTE_MAX_ATTEMPTS)
        self.backoff_seconds = (
            settings.REMOTE_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.API_BASE_URL).rstrip("/"),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        rejected: type[Exception] = RemoteStoreError,
    ) -> dict[str, Any]:
        """
        Send a request with bounded retries.

        Args:
            method: HTTP method.
            path: API path relative to the base URL.
            json: Optional JSON body.
            rejected: Exception raised for a 4xx response.

        Returns:
            The ``data`` object of the response envelope.

        Raises:
            RemoteStoreError: Retries exhausted.
            rejected: The server refused the request.
        """
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.request(method, path, json=json)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "Entitlement API %s %s failed (attempt %d/%d): %s",
                    method, path, attempt, self.max_attempts, last_error,
                )
            else:
                if response.status_code < 400:
                    try:
                        payload = response.json()
                    except ValueError:
                        payload = None
                    if isinstance(payload, dict):
                        return payload.get("data") or {}
                    # Captive portals and proxies answer 200 with HTML
                    last_error = f"HTTP {response.status_code} with unreadable body"
                    logger.warning(
                        "Entitlement API %s %s returned an unreadable body (attempt %d/%d): %s",
                        method, path, attempt, self.max_attempts, response.text[:200],
                    )
                elif response.status_code < 500:
                    logger.error(
                        "Entitlement API %s %s rejected with %d: %s",
                        method, path, response.status_code, response.text[:200],
                    )
                    raise rejected(f"{method} {path} rejected with {response.status_code}")
                else:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        "Entitlement API %s %s returned %d (attempt %d/%d)",
                        method, path, response.status_code, attempt, self.max_attempts,
                    )

            if attempt < self.max_attempts:
                await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        raise RemoteStoreError(f"{method} {path} failed after {self.max_attempts} attempts: {last_error}")

    async def commit_transaction(self, signed_transaction: str, source: str) -> RemoteSummary:
        """
        Commit a signed transaction; returns the recomputed summary.

        Raises:
            VerificationFailed: The server rejected the transaction.
            RemoteStoreError: The server could not be reached.
        """
        data = await self._request(
            "POST",
            "/api/v1/entitlements/purchases",
            json={"signed_transaction": signed_transaction, "source": source},
            rejected=VerificationFailed,
        )
        return _parse_summary(data.get("summary") or {})

    async def fetch_summary(self) -> RemoteSummary:
        """Fetch the account's current entitlement summary."""
        data = await self._request("GET", "/api/v1/entitlements/me")
        return _parse_summary(data)


def _parse_summary(data: Any) -> RemoteSummary:
    try:
        return RemoteSummary.from_api(data)
    except (AttributeError, TypeError, ValueError) as e:
        logger.warning("Entitlement API returned an invalid summary: %s", e)
        raise RemoteStoreError(f"invalid summary: {e}") from e
