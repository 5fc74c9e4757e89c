"""Delivery queue backends."""

from webhook_service.queue.base import DeliveryQueue, MessageHandler, QueueMessage
from webhook_service.queue.memory import InMemoryDeliveryQueue
from webhook_service.queue.redis import RedisDeliveryQueue

__all__ = [
    "DeliveryQueue",
    "MessageHandler",
    "QueueMessage",
    "InMemoryDeliveryQueue",
    "RedisDeliveryQueue",
]
