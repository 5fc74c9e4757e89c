"""Repository package exports."""

from webhook_service.repositories.webhooks import (
    WebhookDeliveryRepository,
    WebhookEventRepository,
    WebhookSubscriptionRepository,
)

__all__ = [
    "WebhookEventRepository",
    "WebhookSubscriptionRepository",
    "WebhookDeliveryRepository",
]
