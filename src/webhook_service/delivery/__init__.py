"""Worker path: outbound HTTP and the delivery state machine."""

from webhook_service.delivery.executor import DeliveryExecutor
from webhook_service.delivery.http_client import HttpResponse, WebhookHttpClient

__all__ = ["DeliveryExecutor", "HttpResponse", "WebhookHttpClient"]
