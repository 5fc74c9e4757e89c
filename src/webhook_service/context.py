"""Wiring of repositories, queue, executor and service for one process."""
from __future__ import annotations

from dataclasses import dataclass

from asyncpg import Pool  # type: ignore[import-untyped]

from webhook_service.delivery import DeliveryExecutor, WebhookHttpClient
from webhook_service.delivery.defaults import DeliveryDefaults
from webhook_service.queue import DeliveryQueue, InMemoryDeliveryQueue, RedisDeliveryQueue
from webhook_service.repositories import (
    WebhookDeliveryRepository,
    WebhookEventRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.services import RetryBackoff, SubscriptionCache, WebhookService
from webhook_service.settings import Settings
from webhook_service.worker import BackgroundWorker, WorkerTask
from webhook_service.workers import create_webhook_reclaim


@dataclass
class WebhookContext:
    settings: Settings
    events: WebhookEventRepository
    subscriptions: WebhookSubscriptionRepository
    deliveries: WebhookDeliveryRepository
    queue: DeliveryQueue
    http_client: WebhookHttpClient
    service: WebhookService
    executor: DeliveryExecutor
    worker: BackgroundWorker

    async def start(self) -> None:
        self.queue.subscribe(self.settings.webhook_queue_topic, self.executor.handle_message)
        await self.queue.start()

    async def close(self) -> None:
        await self.queue.stop()
        await self.http_client.close()


def build_queue(settings: Settings) -> DeliveryQueue:
    if settings.webhook_queue_backend == "redis":
        return RedisDeliveryQueue.from_url(
            settings.redis_url,
            concurrency=settings.webhook_worker_concurrency,
            redelivery_delay_seconds=settings.webhook_queue_redelivery_delay_seconds,
            poll_interval_seconds=settings.webhook_queue_poll_interval_seconds,
            default_max_attempts=max(1, settings.webhook_default_max_retries),
        )
    return InMemoryDeliveryQueue(
        concurrency=settings.webhook_worker_concurrency,
        redelivery_delay_seconds=settings.webhook_queue_redelivery_delay_seconds,
        default_max_attempts=max(1, settings.webhook_default_max_retries),
    )


def build_context(
    pool: Pool,
    settings: Settings,
    *,
    queue: DeliveryQueue | None = None,
    http_client: WebhookHttpClient | None = None,
) -> WebhookContext:
    events = WebhookEventRepository(pool)
    subscriptions = WebhookSubscriptionRepository(pool)
    deliveries = WebhookDeliveryRepository(pool)
    queue = queue or build_queue(settings)
    http_client = http_client or WebhookHttpClient()
    defaults = DeliveryDefaults.from_settings(settings)
    topic = settings.webhook_queue_topic

    cache = SubscriptionCache(
        subscriptions, ttl_seconds=settings.webhook_subscription_cache_ttl_seconds
    )
    service = WebhookService(
        events=events,
        subscriptions=subscriptions,
        deliveries=deliveries,
        cache=cache,
        queue=queue,
        defaults=defaults,
        topic=topic,
    )
    executor = DeliveryExecutor(
        subscriptions=subscriptions,
        deliveries=deliveries,
        http_client=http_client,
        queue=queue,
        backoff=RetryBackoff(tuple(settings.webhook_retry_delays)),
        defaults=defaults,
        topic=topic,
    )
    worker = BackgroundWorker(
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(
                name="webhook_reclaim",
                fn=create_webhook_reclaim(
                    deliveries=deliveries,
                    subscriptions=subscriptions,
                    queue=queue,
                    defaults=defaults,
                    grace_minutes=settings.webhook_retry_grace_minutes,
                    topic=topic,
                ),
            ),
        ],
    )
    return WebhookContext(
        settings=settings,
        events=events,
        subscriptions=subscriptions,
        deliveries=deliveries,
        queue=queue,
        http_client=http_client,
        service=service,
        executor=executor,
        worker=worker,
    )
