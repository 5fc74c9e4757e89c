"""Service-wide delivery values used when a subscription leaves a field unset."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from webhook_service.domain.webhooks import WebhookSubscription


@dataclass(frozen=True)
class DeliveryDefaults:
    timeout_seconds: float = 5.0
    max_retries: int = 3
    content_type: str = "application/json"
    user_agent: str = "Webhook-Service/1.0"
    signature_secret: str = "webhook-secret"
    response_body_limit: int = 10_000

    @classmethod
    def from_settings(cls, settings: Any) -> "DeliveryDefaults":
        return cls(
            timeout_seconds=settings.webhook_default_timeout_seconds,
            max_retries=settings.webhook_default_max_retries,
            content_type=settings.webhook_default_content_type,
            user_agent=settings.webhook_user_agent,
            signature_secret=settings.webhook_signature_secret,
            response_body_limit=settings.webhook_response_body_limit,
        )

    def max_retries_for(self, subscription: WebhookSubscription) -> int:
        if subscription.max_retries is None:
            return self.max_retries
        return subscription.max_retries

    def queue_attempts_for(self, subscription: WebhookSubscription) -> int:
        return max(1, self.max_retries_for(subscription))
