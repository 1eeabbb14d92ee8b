"""
Entitlement Change Events
=========================

Publish/subscribe channel for entitlement changes. Each subscriber gets
its own queue; unsubscribing is explicit and deterministic.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntitlementChanged:
    """Published whenever the client learns a new entitlement state."""

    is_ad_free: bool
    product_type: Optional[str]
    source: str  # purchase | restore | remote | transaction
    at: datetime


class EntitlementSubscription:
    """Async iterator over entitlement changes for one subscriber."""

    def __init__(self, channel: "EntitlementEvents", maxsize: int):
        self._channel = channel
        self._queue: asyncio.Queue[Optional[EntitlementChanged]] = asyncio.Queue(maxsize)
        self.closed = False

    def _offer(self, event: Optional[EntitlementChanged]) -> None:
        if self._queue.full():
            # Slow consumer: drop the oldest, the latest state matters most
            self._queue.get_nowait()
        self._queue.put_nowait(event)

    async def get(self) -> Optional[EntitlementChanged]:
        """Next event, or None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> EntitlementChanged:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EntitlementEvents:
    """Fan-out of ``EntitlementChanged`` events to subscribers."""

    def __init__(self, maxsize: int = 16):
        self._maxsize = maxsize
        self._subscribers: list[EntitlementSubscription] = []

    def subscribe(self) -> EntitlementSubscription:
        subscription = EntitlementSubscription(self, self._maxsize)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EntitlementSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        if not subscription.closed:
            subscription.closed = True
            subscription._offer(None)

    def publish(self, event: EntitlementChanged) -> None:
        for subscription in list(self._subscribers):
            subscription._offer(event)
        logger.debug(
            "Entitlement change published to %d subscribers: ad_free=%s source=%s",
            len(self._subscribers),
            event.is_ad_free,
            event.source,
        )

    def close(self) -> None:
        for subscription in list(self._subscribers):
            self.unsubscribe(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
