"""Delivery executor: one processing pass per dequeued delivery.

State machine::

    pending -> delivered | failed | retry
    retry   -> (re-published with delay) -> delivered | failed | retry

``max_retries`` counts retries after the first attempt: a failing delivery
whose ``retry_count`` is below the limit is scheduled again with
``retry_count + 1`` and ``delay = backoff(retry_count)``; at the limit it
becomes ``failed``.
"""
from __future__ import annotations

import time
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping
from uuid import UUID

import structlog

from webhook_service.core.exceptions import DeliveryTransportError
from webhook_service.delivery.defaults import DeliveryDefaults
from webhook_service.delivery.http_client import HttpResponse, WebhookHttpClient
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.security import serialize_payload
from webhook_service.domain.webhooks import WebhookDelivery, WebhookSubscription
from webhook_service.queue.base import DeliveryQueue, QueueMessage
from webhook_service.repositories.webhooks import (
    WebhookDeliveryRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.services.backoff import RetryBackoff

logger = structlog.get_logger(__name__)

INACTIVE_SUBSCRIPTION_ERROR = "Subscription is not active"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _http_error(response: HttpResponse) -> str:
    if response.reason:
        return f"HTTP {response.status}: {response.reason}"
    return f"HTTP {response.status}"


def _merge_headers(headers: dict[str, str], extra: Mapping[str, str]) -> None:
    """Set *extra* on *headers*, replacing case-insensitive duplicates."""
    for name, value in extra.items():
        for existing in [k for k in headers if k.lower() == name.lower()]:
            del headers[existing]
        headers[name] = value


class DeliveryExecutor:
    def __init__(
        self,
        *,
        subscriptions: WebhookSubscriptionRepository,
        deliveries: WebhookDeliveryRepository,
        http_client: WebhookHttpClient,
        queue: DeliveryQueue,
        backoff: RetryBackoff,
        defaults: DeliveryDefaults = DeliveryDefaults(),
        topic: str = "webhooks",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._http = http_client
        self._queue = queue
        self._backoff = backoff
        self._defaults = defaults
        self._topic = topic
        self._clock = clock

    async def handle_message(self, message: QueueMessage) -> None:
        """Queue handler. Raising hands the message back to the queue for redelivery."""
        await self.process(UUID(str(message.data["delivery_id"])))

    def build_headers(
        self, subscription: WebhookSubscription, delivery: WebhookDelivery, body: str
    ) -> dict[str, str]:
        headers = {
            "Content-Type": subscription.content_type or self._defaults.content_type,
            "User-Agent": self._defaults.user_agent,
            "X-Webhook-ID": str(delivery.id),
            "X-Event-Name": delivery.event_name,
            "X-Event-ID": delivery.event_id,
        }
        _merge_headers(headers, subscription.custom_headers)
        # Security headers go last so custom headers can never replace them.
        _merge_headers(
            headers,
            subscription.auth.headers(body, fallback_secret=self._defaults.signature_secret),
        )
        return headers

    async def process(self, delivery_id: UUID) -> WebhookDelivery | None:
        delivery = await self._deliveries.get(delivery_id)
        if delivery is None:
            logger.warning("webhook_delivery_missing", delivery_id=str(delivery_id))
            return None
        log = logger.bind(
            delivery_id=str(delivery.id),
            event_name=delivery.event_name,
            event_id=delivery.event_id,
            subscription_id=str(delivery.subscription_id),
        )
        if delivery.status is DeliveryStatus.DELIVERED:
            # at-least-once queue handed us a duplicate. A failed row is attempted
            # again: redelivery after a crash relies on it.
            log.info("webhook_delivery_already_delivered")
            return delivery

        try:
            return await self._attempt(delivery, log)
        except Exception as exc:
            log.exception("webhook_delivery_processing_error")
            await self._record_crash(delivery, exc, log)
            raise

    async def _record_crash(self, delivery: WebhookDelivery, exc: Exception, log: Any) -> None:
        try:
            await self._deliveries.update(
                delivery.id,
                status=DeliveryStatus.FAILED,
                error=str(exc) or exc.__class__.__name__,
                error_detail={
                    "type": exc.__class__.__name__,
                    "stack": "".join(traceback.format_exception(exc)),
                },
            )
        except Exception:
            log.exception("webhook_delivery_failure_not_recorded")

    async def _attempt(self, delivery: WebhookDelivery, log: Any) -> WebhookDelivery | None:
        subscription = await self._subscriptions.get(delivery.subscription_id)
        if subscription is None or not subscription.status.accepts_deliveries:
            log.info(
                "webhook_delivery_skipped",
                reason="subscription missing" if subscription is None else subscription.status.value,
            )
            return await self._deliveries.update(
                delivery.id,
                status=DeliveryStatus.FAILED,
                error=INACTIVE_SUBSCRIPTION_ERROR,
                next_retry_at=None,
            )

        body = serialize_payload(delivery.payload)
        headers = self.build_headers(subscription, delivery, body)
        timeout_s = subscription.timeout or self._defaults.timeout_seconds

        response: HttpResponse | None = None
        started = time.perf_counter()
        try:
            response = await self._http.post(
                subscription.endpoint_url, headers=headers, body=body, timeout_s=timeout_s
            )
            error = None if response.ok else _http_error(response)
        except DeliveryTransportError as exc:
            error = str(exc)
        duration_ms = int((time.perf_counter() - started) * 1000)
        now = self._clock()

        changes: dict[str, Any] = {"request_headers": headers, "duration_ms": duration_ms}
        if response is not None:
            changes.update(
                response_status=response.status,
                response_body=response.body[: self._defaults.response_body_limit],
                response_headers=response.headers,
                responded_at=now,
            )

        if error is None:
            await self._subscriptions.record_success(subscription.id, now)
            changes.update(status=DeliveryStatus.DELIVERED, error=None, next_retry_at=None)
            updated = await self._deliveries.update(delivery.id, **changes)
            log.info(
                "webhook_delivered",
                response_status=changes["response_status"],
                duration_ms=duration_ms,
            )
            return updated

        await self._subscriptions.record_failure(subscription.id, now)
        changes["error"] = error

        max_retries = self._defaults.max_retries_for(subscription)
        if delivery.retry_count >= max_retries:
            changes.update(status=DeliveryStatus.FAILED, next_retry_at=None)
            updated = await self._deliveries.update(delivery.id, **changes)
            log.warning(
                "webhook_delivery_failed_permanently",
                error=error,
                retry_count=delivery.retry_count,
            )
            return updated

        delay_s = self._backoff(delivery.retry_count)
        changes.update(
            status=DeliveryStatus.RETRY,
            retry_count=delivery.retry_count + 1,
            next_retry_at=now + timedelta(seconds=delay_s),
        )
        updated = await self._deliveries.update(delivery.id, **changes)
        await self._queue.publish(
            self._topic,
            {"delivery_id": str(delivery.id)},
            delay_ms=delay_s * 1000,
            max_attempts=self._defaults.queue_attempts_for(subscription),
        )
        log.info(
            "webhook_delivery_retry_scheduled",
            error=error,
            retry_count=delivery.retry_count + 1,
            delay_seconds=delay_s,
        )
        return updated
