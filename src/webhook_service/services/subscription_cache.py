"""Event name -> active subscriptions, cached with one shared expiry."""
from __future__ import annotations

import time
from typing import Callable, Protocol

import structlog

from webhook_service.domain.webhooks import WebhookSubscription

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 300.0


class ActiveSubscriptionSource(Protocol):
    async def list_active_containing_event(self, event_name: str) -> list[WebhookSubscription]: ...


class SubscriptionCache:
    """Coarse-grained cache of subscription matches.

    A single expiry covers the whole map: once it passes, every entry is
    dropped. Any subscription write must call :meth:`invalidate` so the next
    lookup reads the store again. The cache is per process.
    """

    def __init__(
        self,
        source: ActiveSubscriptionSource,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = source
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, list[WebhookSubscription]] = {}
        self._expires_at = 0.0
        self._generation = 0

    async def get_subscriptions_for_event(self, event_name: str) -> list[WebhookSubscription]:
        now = self._clock()
        if now > self._expires_at:
            self._entries.clear()

        cached = self._entries.get(event_name)
        if cached is not None:
            return list(cached)

        generation = self._generation
        loaded = await self._source.list_active_containing_event(event_name)
        matching = [sub for sub in loaded if event_name in sub.events]
        # An invalidate() during the load means this result may already be stale.
        if generation == self._generation:
            self._entries[event_name] = matching
            self._expires_at = self._clock() + self._ttl
        return list(matching)

    def invalidate(self) -> None:
        self._entries.clear()
        self._expires_at = 0.0
        self._generation += 1
        logger.debug("subscription_cache_invalidated")

    def __len__(self) -> int:
        return len(self._entries)
