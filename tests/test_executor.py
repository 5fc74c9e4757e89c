"""Tests for DeliveryExecutor: one delivery attempt and its state transitions."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from webhook_service.delivery import DeliveryExecutor, HttpResponse
from webhook_service.delivery.defaults import DeliveryDefaults
from webhook_service.delivery.executor import INACTIVE_SUBSCRIPTION_ERROR
from webhook_service.domain.enums import DeliveryStatus, SecurityScheme, SubscriptionStatus
from webhook_service.domain.security import SIGNATURE_HEADER, TIMESTAMP_HEADER
from webhook_service.queue import InMemoryDeliveryQueue, QueueMessage
from webhook_service.services import RetryBackoff, SubscriptionCache, WebhookService

from fakes import (
    FakeDeliveryRepository,
    FakeEventRepository,
    FakeHttpClient,
    FakeQueue,
    FakeSubscriptionRepository,
    timeout_error,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def subscriptions():
    return FakeSubscriptionRepository()


@pytest.fixture
def deliveries():
    return FakeDeliveryRepository()


@pytest.fixture
def queue():
    return FakeQueue()


def make_executor(subscriptions, deliveries, queue, http, **defaults):
    return DeliveryExecutor(
        subscriptions=subscriptions,
        deliveries=deliveries,
        http_client=http,
        queue=queue,
        backoff=RetryBackoff([60, 300, 1800]),
        defaults=DeliveryDefaults(**defaults),
        topic="webhooks",
        clock=lambda: NOW,
    )


async def pending_delivery(deliveries, subscription, **changes):
    delivery = await deliveries.create(
        subscription_id=subscription.id,
        event_name="patient.created",
        event_id="evt-1",
        payload={"id": "p-1"},
    )
    if changes:
        delivery = await deliveries.update(delivery.id, **changes)
    return delivery


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_successful_delivery(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub)
    http = FakeHttpClient(HttpResponse(200, "OK", '{"ok":true}', {"X-Req": "1"}))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.status is DeliveryStatus.DELIVERED
    assert result.response_status == 200
    assert result.response_body == '{"ok":true}'
    assert result.response_headers == {"X-Req": "1"}
    assert result.responded_at == NOW
    assert result.error is None
    assert result.duration_ms is not None
    assert result.request_headers["X-Webhook-ID"] == str(delivery.id)

    [request] = http.requests
    assert request["url"] == sub.endpoint_url
    assert request["body"] == '{"id":"p-1"}'
    assert request["timeout_s"] == 5.0

    assert subscriptions.items[sub.id].success_count == 1
    assert subscriptions.items[sub.id].last_success_at == NOW
    assert queue.published == []


@pytest.mark.asyncio
async def test_subscription_timeout_and_content_type_override_defaults(subscriptions, deliveries, queue):
    sub = subscriptions.add(timeout=2.5, content_type="application/vnd.api+json")
    delivery = await pending_delivery(deliveries, sub)
    http = FakeHttpClient(HttpResponse(204))

    await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    [request] = http.requests
    assert request["timeout_s"] == 2.5
    assert request["headers"]["Content-Type"] == "application/vnd.api+json"


@pytest.mark.asyncio
async def test_response_body_is_truncated(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub)
    http = FakeHttpClient(HttpResponse(200, "OK", "x" * 50))

    executor = make_executor(subscriptions, deliveries, queue, http, response_body_limit=10)
    result = await executor.process(delivery.id)

    assert result.response_body == "x" * 10


# ---------------------------------------------------------------------------
# Failure, retry and the retry budget
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_http_error_schedules_retry(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub)
    http = FakeHttpClient(HttpResponse(500, "Internal Server Error", "boom"))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.status is DeliveryStatus.RETRY
    assert result.retry_count == 1
    assert result.next_retry_at == NOW + timedelta(seconds=60)
    assert result.error == "HTTP 500: Internal Server Error"
    assert result.response_status == 500
    assert subscriptions.items[sub.id].failure_count == 1
    assert queue.published == [
        {
            "id": queue.published[0]["id"],
            "topic": "webhooks",
            "data": {"delivery_id": str(delivery.id)},
            "delay_ms": 60_000,
            "max_attempts": 3,
        }
    ]


@pytest.mark.asyncio
async def test_retry_delay_follows_backoff(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub, status=DeliveryStatus.RETRY, retry_count=2)
    http = FakeHttpClient(HttpResponse(503, "Service Unavailable"))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.retry_count == 3
    assert result.next_retry_at == NOW + timedelta(seconds=1800)
    assert queue.published[0]["delay_ms"] == 1_800_000


@pytest.mark.asyncio
async def test_exhausted_retries_fail_permanently(subscriptions, deliveries, queue):
    sub = subscriptions.add(max_retries=3)
    delivery = await pending_delivery(deliveries, sub, status=DeliveryStatus.RETRY, retry_count=3)
    http = FakeHttpClient(HttpResponse(500, "Internal Server Error"))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.status is DeliveryStatus.FAILED
    assert result.retry_count == 3
    assert result.next_retry_at is None
    assert queue.published == []


@pytest.mark.asyncio
async def test_zero_max_retries_fails_on_first_error(subscriptions, deliveries, queue):
    sub = subscriptions.add(max_retries=0)
    delivery = await pending_delivery(deliveries, sub)
    http = FakeHttpClient(HttpResponse(400, "Bad Request"))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.status is DeliveryStatus.FAILED
    assert result.error == "HTTP 400: Bad Request"


@pytest.mark.asyncio
async def test_service_default_max_retries_applies(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub, status=DeliveryStatus.RETRY, retry_count=1)
    http = FakeHttpClient(HttpResponse(500))

    executor = make_executor(subscriptions, deliveries, queue, http, max_retries=1)
    result = await executor.process(delivery.id)

    assert result.status is DeliveryStatus.FAILED
    assert result.error == "HTTP 500"


@pytest.mark.asyncio
async def test_timeout_is_recorded_without_response(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub)
    http = FakeHttpClient(timeout_error(5))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.status is DeliveryStatus.RETRY
    assert result.error == "Request timed out after 5s"
    assert result.response_status is None
    assert subscriptions.items[sub.id].failure_count == 1


# ---------------------------------------------------------------------------
# Skips
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("status", [SubscriptionStatus.INACTIVE, SubscriptionStatus.SUSPENDED])
async def test_inactive_subscription_fails_without_request(subscriptions, deliveries, queue, status):
    sub = subscriptions.add(status=status)
    delivery = await pending_delivery(deliveries, sub)
    http = FakeHttpClient(HttpResponse(200))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.status is DeliveryStatus.FAILED
    assert result.error == INACTIVE_SUBSCRIPTION_ERROR
    assert http.requests == []
    assert subscriptions.items[sub.id].failure_count == 0


@pytest.mark.asyncio
async def test_testing_subscription_still_receives_deliveries(subscriptions, deliveries, queue):
    sub = subscriptions.add(status=SubscriptionStatus.TESTING)
    delivery = await pending_delivery(deliveries, sub)
    http = FakeHttpClient(HttpResponse(200))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.status is DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_deleted_subscription_fails_delivery(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub)
    await subscriptions.delete(sub.id)
    http = FakeHttpClient(HttpResponse(200))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.status is DeliveryStatus.FAILED
    assert http.requests == []


@pytest.mark.asyncio
async def test_already_delivered_is_not_sent_again(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub, status=DeliveryStatus.DELIVERED)
    http = FakeHttpClient(HttpResponse(200))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.status is DeliveryStatus.DELIVERED
    assert http.requests == []
    assert subscriptions.items[sub.id].success_count == 0


@pytest.mark.asyncio
async def test_failed_delivery_is_attempted_again_on_redelivery(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub, status=DeliveryStatus.FAILED)
    http = FakeHttpClient(HttpResponse(200))

    result = await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    assert result.status is DeliveryStatus.DELIVERED
    assert len(http.requests) == 1


@pytest.mark.asyncio
async def test_missing_delivery_is_ignored(subscriptions, deliveries, queue):
    http = FakeHttpClient(HttpResponse(200))
    executor = make_executor(subscriptions, deliveries, queue, http)

    message = QueueMessage(data={"delivery_id": "00000000-0000-0000-0000-000000000000"})
    await executor.handle_message(message)

    assert http.requests == []


@pytest.mark.asyncio
async def test_unexpected_error_marks_failed_and_propagates(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub)
    http = FakeHttpClient(RuntimeError("client bug"))

    with pytest.raises(RuntimeError):
        await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    stored = deliveries.items[delivery.id]
    assert stored.status is DeliveryStatus.FAILED
    assert stored.error == "client bug"
    assert stored.error_detail["type"] == "RuntimeError"
    assert "client bug" in stored.error_detail["stack"]


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_standard_headers(subscriptions, deliveries, queue):
    sub = subscriptions.add()
    delivery = await pending_delivery(deliveries, sub)
    executor = make_executor(subscriptions, deliveries, queue, FakeHttpClient(HttpResponse(200)))

    headers = executor.build_headers(sub, delivery, '{"id":"p-1"}')

    assert headers == {
        "Content-Type": "application/json",
        "User-Agent": "Webhook-Service/1.0",
        "X-Webhook-ID": str(delivery.id),
        "X-Event-Name": "patient.created",
        "X-Event-ID": "evt-1",
    }


@pytest.mark.asyncio
async def test_custom_headers_replace_defaults_case_insensitively(subscriptions, deliveries, queue):
    sub = subscriptions.add(custom_headers={"content-type": "text/plain", "X-Tenant": "t1"})
    delivery = await pending_delivery(deliveries, sub)
    executor = make_executor(subscriptions, deliveries, queue, FakeHttpClient(HttpResponse(200)))

    headers = executor.build_headers(sub, delivery, "{}")

    assert headers["content-type"] == "text/plain"
    assert "Content-Type" not in headers
    assert headers["X-Tenant"] == "t1"


@pytest.mark.asyncio
async def test_security_headers_win_over_custom_headers(subscriptions, deliveries, queue):
    sub = subscriptions.add(
        security_scheme=SecurityScheme.BEARER,
        security_key="real-token",
        custom_headers={"authorization": "Bearer spoofed"},
    )
    delivery = await pending_delivery(deliveries, sub)
    executor = make_executor(subscriptions, deliveries, queue, FakeHttpClient(HttpResponse(200)))

    headers = executor.build_headers(sub, delivery, "{}")

    assert headers["Authorization"] == "Bearer real-token"
    assert "authorization" not in headers


@pytest.mark.asyncio
async def test_hmac_signature_sent_with_delivery(subscriptions, deliveries, queue):
    sub = subscriptions.add(security_scheme=SecurityScheme.HMAC, security_key="sekret")
    delivery = await pending_delivery(deliveries, sub)
    http = FakeHttpClient(HttpResponse(200))

    await make_executor(subscriptions, deliveries, queue, http).process(delivery.id)

    headers = http.requests[0]["headers"]
    assert headers[SIGNATURE_HEADER].startswith("sha256=")
    assert headers[TIMESTAMP_HEADER].isdigit()


# ---------------------------------------------------------------------------
# Trigger -> queue -> executor, end to end
# ---------------------------------------------------------------------------

async def _wire(http, max_retries):
    events = FakeEventRepository(["claim.approved"])
    subscriptions = FakeSubscriptionRepository()
    deliveries = FakeDeliveryRepository()
    queue = InMemoryDeliveryQueue(redelivery_delay_seconds=0)
    defaults = DeliveryDefaults(max_retries=max_retries)
    service = WebhookService(
        events=events,
        subscriptions=subscriptions,
        deliveries=deliveries,
        cache=SubscriptionCache(subscriptions),
        queue=queue,
        defaults=defaults,
    )
    executor = DeliveryExecutor(
        subscriptions=subscriptions,
        deliveries=deliveries,
        http_client=http,
        queue=queue,
        backoff=RetryBackoff([0]),
        defaults=defaults,
    )
    queue.subscribe("webhooks", executor.handle_message)
    return service, subscriptions, deliveries, queue


@pytest.mark.asyncio
async def test_end_to_end_gives_up_after_retry_budget():
    http = FakeHttpClient(HttpResponse(500, "Internal Server Error"))
    service, subscriptions, deliveries, queue = await _wire(http, max_retries=2)
    sub = subscriptions.add(events=["claim.approved"])

    [delivery] = await service.trigger_event("claim.approved", {"claim": "c-1"})
    await queue.run_ready("webhooks")

    stored = deliveries.items[delivery.id]
    assert stored.status is DeliveryStatus.FAILED
    assert stored.retry_count == 2
    assert len(http.requests) == 3
    assert subscriptions.items[sub.id].failure_count == 3
    assert queue.dead_letters["webhooks"] == []


@pytest.mark.asyncio
async def test_end_to_end_recovers_after_transient_errors():
    http = FakeHttpClient(
        HttpResponse(502, "Bad Gateway"),
        timeout_error(),
        HttpResponse(200, "OK"),
    )
    service, subscriptions, deliveries, queue = await _wire(http, max_retries=3)
    sub = subscriptions.add(events=["claim.approved"])

    [delivery] = await service.trigger_event("claim.approved", {"claim": "c-1"})
    await queue.run_ready("webhooks")

    stored = deliveries.items[delivery.id]
    assert stored.status is DeliveryStatus.DELIVERED
    assert stored.retry_count == 2
    assert subscriptions.items[sub.id].failure_count == 2
    assert subscriptions.items[sub.id].success_count == 1
