"""Domain services exports."""

from webhook_service.services.backoff import RetryBackoff
from webhook_service.services.subscription_cache import SubscriptionCache
from webhook_service.services.triggers import trigger_webhook
from webhook_service.services.webhooks import WebhookService

__all__ = [
    "RetryBackoff",
    "SubscriptionCache",
    "WebhookService",
    "trigger_webhook",
]
