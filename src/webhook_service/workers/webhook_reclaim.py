"""Worker: re-publish deliveries the queue lost track of."""
from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from webhook_service.delivery.defaults import DeliveryDefaults
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.queue.base import DeliveryQueue
from webhook_service.repositories.webhooks import (
    WebhookDeliveryRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.worker import TaskFn

logger = structlog.get_logger(__name__)


def create_webhook_reclaim(
    *,
    deliveries: WebhookDeliveryRepository,
    subscriptions: WebhookSubscriptionRepository,
    queue: DeliveryQueue,
    defaults: DeliveryDefaults,
    grace_minutes: int,
    topic: str = "webhooks",
    batch_size: int = 100,
) -> TaskFn:
    """Build the reclaim task.

    Picks ``retry`` rows overdue by more than *grace_minutes* and ``pending``
    rows untouched for that long (a process died between insert and publish,
    or the in-memory queue was lost on restart) and publishes them again. The
    row is touched first so the next sweep does not pick it up twice.
    """

    async def webhook_reclaim(now: datetime) -> str | None:
        cutoff = now - timedelta(minutes=grace_minutes)
        stranded = await deliveries.list_stranded(cutoff, limit=batch_size)
        republished = 0
        for delivery in stranded:
            subscription = await subscriptions.get(delivery.subscription_id)
            max_attempts = (
                defaults.queue_attempts_for(subscription)
                if subscription is not None
                else max(1, defaults.max_retries)
            )
            if delivery.status is DeliveryStatus.RETRY:
                await deliveries.update(delivery.id, next_retry_at=now)
            else:
                await deliveries.update(delivery.id, status=DeliveryStatus.PENDING)
            await queue.publish(topic, {"delivery_id": str(delivery.id)}, max_attempts=max_attempts)
            logger.info(
                "webhook_delivery_reclaimed",
                delivery_id=str(delivery.id),
                status=delivery.status.value,
            )
            republished += 1
        return f"republished={republished}" if republished else None

    return webhook_reclaim
