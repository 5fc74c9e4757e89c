"""Common exceptions for domain, repository and delivery layers."""
from __future__ import annotations


class WebhookServiceError(Exception):
    """Base error for service layer."""


class NotFoundError(WebhookServiceError):
    """Raised when requested entity is missing."""


class AlreadyExistsError(WebhookServiceError):
    """Raised when registering an entity whose unique key is taken."""


class UnknownEventError(WebhookServiceError):
    """Raised when an event name is not present in the registry."""

    def __init__(self, event_name: str):
        super().__init__(f"Webhook event '{event_name}' does not exist")
        self.event_name = event_name


class InvalidSubscriptionError(WebhookServiceError):
    """Raised when subscription data cannot be accepted."""


class DeliveryTransportError(WebhookServiceError):
    """Raised by the HTTP client on network failure or timeout.

    Never escapes the executor: it is recorded on the delivery and drives the
    retry/failed transition.
    """
