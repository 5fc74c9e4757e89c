"""Webhook domain service: event registry, subscriptions, trigger path, manual retry."""
from __future__ import annotations

from typing import Any, Iterable, List, Tuple
from uuid import UUID, uuid4

import structlog

from webhook_service.core.exceptions import (
    AlreadyExistsError,
    InvalidSubscriptionError,
    NotFoundError,
    UnknownEventError,
)
from webhook_service.delivery.defaults import DeliveryDefaults
from webhook_service.domain.enums import DeliveryStatus, SecurityScheme
from webhook_service.domain.webhooks import (
    WebhookDelivery,
    WebhookEvent,
    WebhookEventCreateDTO,
    WebhookSubscription,
    WebhookSubscriptionCreateDTO,
    WebhookSubscriptionUpdateDTO,
)
from webhook_service.queue.base import DeliveryQueue
from webhook_service.repositories.webhooks import (
    WebhookDeliveryRepository,
    WebhookEventRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.services.filters import matches_filters
from webhook_service.services.subscription_cache import SubscriptionCache

logger = structlog.get_logger(__name__)

_KEYED_SCHEMES = (SecurityScheme.BASIC, SecurityScheme.BEARER, SecurityScheme.OAUTH2)


class WebhookService:
    def __init__(
        self,
        *,
        events: WebhookEventRepository,
        subscriptions: WebhookSubscriptionRepository,
        deliveries: WebhookDeliveryRepository,
        cache: SubscriptionCache,
        queue: DeliveryQueue,
        defaults: DeliveryDefaults = DeliveryDefaults(),
        topic: str = "webhooks",
    ):
        self._events = events
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._cache = cache
        self._queue = queue
        self._defaults = defaults
        self._topic = topic

    # ------------------------------------------------------------------
    # Event registry
    # ------------------------------------------------------------------

    async def register_event(self, data: WebhookEventCreateDTO) -> WebhookEvent:
        if await self._events.get_by_name(data.name) is not None:
            raise AlreadyExistsError(f"Webhook event '{data.name}' already exists")
        event = await self._events.create(data)
        if event is None:
            # registered concurrently between the check and the insert
            raise AlreadyExistsError(f"Webhook event '{data.name}' already exists")
        logger.info("webhook_event_registered", event_name=event.name, category=event.category)
        return event

    async def list_events(self) -> List[WebhookEvent]:
        return await self._events.list_all()

    async def bootstrap_events(self, definitions: Iterable[WebhookEventCreateDTO]) -> List[WebhookEvent]:
        """Register whichever of *definitions* are not in the catalog yet."""
        definitions = list(definitions)
        existing = await self._events.list_existing_names(d.name for d in definitions)
        created = []
        for data in definitions:
            if data.name in existing:
                continue
            event = await self._events.create(data)
            existing.add(data.name)
            if event is not None:
                created.append(event)
        if created:
            logger.info("webhook_events_bootstrapped", events=[e.name for e in created])
        return created

    # ------------------------------------------------------------------
    # Subscriptions (every write invalidates the match cache)
    # ------------------------------------------------------------------

    async def _validate_events(self, names: list[str]) -> None:
        if not names:
            raise InvalidSubscriptionError("events must be a non-empty list")
        existing = await self._events.list_existing_names(names)
        missing = sorted(set(names) - existing)
        if missing:
            raise UnknownEventError(", ".join(missing))

    @staticmethod
    def _validate_security(scheme: SecurityScheme, key: str | None) -> None:
        if scheme in _KEYED_SCHEMES and not key:
            raise InvalidSubscriptionError(f"security_key is required for '{scheme.value}'")

    async def create_subscription(self, data: WebhookSubscriptionCreateDTO) -> WebhookSubscription:
        data = data.model_copy(update={"events": list(dict.fromkeys(data.events))})
        await self._validate_events(data.events)
        self._validate_security(data.security_scheme, data.security_key)
        subscription = await self._subscriptions.create(data)
        self._cache.invalidate()
        logger.info(
            "webhook_subscription_created",
            subscription_id=str(subscription.id),
            subscriber_id=subscription.subscriber_id,
            subscriber_type=subscription.subscriber_type,
            events=subscription.events,
        )
        return subscription

    async def get_subscription(self, subscription_id: UUID) -> WebhookSubscription:
        subscription = await self._subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Webhook subscription {subscription_id} not found")
        return subscription

    async def list_subscriptions(
        self, subscriber_id: str, subscriber_type: str
    ) -> List[WebhookSubscription]:
        return await self._subscriptions.list_by_subscriber(subscriber_id, subscriber_type)

    async def update_subscription(
        self, subscription_id: UUID, updates: WebhookSubscriptionUpdateDTO
    ) -> WebhookSubscription:
        if updates.events is not None:
            updates = updates.model_copy(update={"events": list(dict.fromkeys(updates.events))})
            await self._validate_events(updates.events)
        if "security_scheme" in updates.model_fields_set or "security_key" in updates.model_fields_set:
            current = await self.get_subscription(subscription_id)
            scheme = updates.security_scheme or current.security_scheme
            key = updates.security_key if "security_key" in updates.model_fields_set else current.security_key
            self._validate_security(scheme, key)
        subscription = await self._subscriptions.update(subscription_id, updates)
        if subscription is None:
            raise NotFoundError(f"Webhook subscription {subscription_id} not found")
        self._cache.invalidate()
        logger.info("webhook_subscription_updated", subscription_id=str(subscription_id))
        return subscription

    async def delete_subscription(self, subscription_id: UUID) -> None:
        deleted = await self._subscriptions.delete(subscription_id)
        if not deleted:
            raise NotFoundError(f"Webhook subscription {subscription_id} not found")
        self._cache.invalidate()
        logger.info("webhook_subscription_deleted", subscription_id=str(subscription_id))

    def invalidate_cache(self) -> None:
        """Hook for subscription writes made outside this service."""
        self._cache.invalidate()

    # ------------------------------------------------------------------
    # Trigger path
    # ------------------------------------------------------------------

    async def trigger_event(
        self,
        event_name: str,
        payload: Any,
        metadata: dict[str, Any] | None = None,
    ) -> List[WebhookDelivery]:
        """Create and enqueue one delivery per matching subscription.

        Never performs the HTTP call. A failure for one subscription is logged
        and does not stop the others.
        """
        if await self._events.get_by_name(event_name) is None:
            raise UnknownEventError(event_name)

        subscriptions = await self._cache.get_subscriptions_for_event(event_name)
        if not subscriptions:
            logger.info("webhook_event_no_subscriptions", event_name=event_name)
            return []

        event_id = str(uuid4())
        created: List[WebhookDelivery] = []
        for subscription in subscriptions:
            if not matches_filters(payload, subscription.filters):
                logger.debug(
                    "webhook_filtered_out",
                    event_name=event_name,
                    subscription_id=str(subscription.id),
                )
                continue
            try:
                delivery = await self._deliveries.create(
                    subscription_id=subscription.id,
                    event_name=event_name,
                    event_id=event_id,
                    payload=payload,
                    metadata={**(metadata or {}), "subscription_name": subscription.name},
                )
                await self._queue.publish(
                    self._topic,
                    {"delivery_id": str(delivery.id)},
                    max_attempts=self._defaults.queue_attempts_for(subscription),
                )
            except Exception:
                logger.exception(
                    "webhook_delivery_enqueue_failed",
                    event_name=event_name,
                    event_id=event_id,
                    subscription_id=str(subscription.id),
                )
                continue
            created.append(delivery)

        logger.info(
            "webhook_event_triggered",
            event_name=event_name,
            event_id=event_id,
            matched=len(subscriptions),
            queued=len(created),
        )
        return created

    # ------------------------------------------------------------------
    # Delivery history and manual retry
    # ------------------------------------------------------------------

    async def list_deliveries(
        self, subscription_id: UUID, *, limit: int = 100, offset: int = 0
    ) -> Tuple[List[WebhookDelivery], int]:
        return await self._deliveries.list_by_subscription(subscription_id, limit=limit, offset=offset)

    async def retry_delivery(self, delivery_id: UUID) -> WebhookDelivery:
        """Re-enqueue a delivery immediately, regardless of its retry budget."""
        delivery = await self._deliveries.get(delivery_id)
        if delivery is None:
            raise NotFoundError(f"Webhook delivery {delivery_id} not found")
        subscription = await self._subscriptions.get(delivery.subscription_id)
        if subscription is None:
            raise NotFoundError(f"Webhook subscription for delivery {delivery_id} not found")

        updated = await self._deliveries.update(
            delivery_id,
            status=DeliveryStatus.PENDING,
            retry_count=delivery.retry_count + 1,
            next_retry_at=None,
        )
        if updated is None:
            raise NotFoundError(f"Webhook delivery {delivery_id} not found")
        await self._queue.publish(
            self._topic,
            {"delivery_id": str(delivery_id)},
            max_attempts=self._defaults.queue_attempts_for(subscription),
        )
        logger.info(
            "webhook_delivery_manual_retry",
            delivery_id=str(delivery_id),
            retry_count=updated.retry_count,
        )
        return updated
