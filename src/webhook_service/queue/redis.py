"""Redis-backed delivery queue (``redis.asyncio``).

Layout per topic:

* ``queue:{topic}``          list of ready messages (RPUSH / BLPOP)
* ``queue:{topic}:delayed``  sorted set scored by due time in epoch ms
* ``queue:{topic}:dlq``      list of messages that exhausted ``max_attempts``

Every consumer promotes due delayed messages before blocking on the ready
list. ``ZREM`` decides which consumer wins a promotion, so a message is moved
exactly once even with several processes polling.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any

import structlog
from redis.asyncio import Redis

from webhook_service.queue.base import DEFAULT_MAX_ATTEMPTS, MessageHandler, QueueMessage

logger = structlog.get_logger(__name__)

_PROMOTE_BATCH = 100


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class RedisDeliveryQueue:
    def __init__(
        self,
        client: Redis,
        *,
        concurrency: int = 10,
        redelivery_delay_seconds: float = 5.0,
        poll_interval_seconds: float = 1.0,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._client = client
        self._concurrency = concurrency
        self._redelivery_delay = redelivery_delay_seconds
        self._poll_interval = poll_interval_seconds
        self._default_max_attempts = default_max_attempts
        self._handlers: dict[str, MessageHandler] = {}
        self._tasks: list[asyncio.Task[None]] = []

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisDeliveryQueue":
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    @staticmethod
    def ready_key(topic: str) -> str:
        return f"queue:{topic}"

    @staticmethod
    def delayed_key(topic: str) -> str:
        return f"queue:{topic}:delayed"

    @staticmethod
    def dead_letter_key(topic: str) -> str:
        return f"queue:{topic}:dlq"

    async def _enqueue(self, topic: str, message: QueueMessage, delay_ms: int) -> None:
        if delay_ms > 0:
            due_ms = _epoch_ms() + delay_ms
            message.process_after = datetime.fromtimestamp(due_ms / 1000, tz=timezone.utc)
            await self._client.zadd(self.delayed_key(topic), {message.model_dump_json(): due_ms})
        else:
            message.process_after = None
            await self._client.rpush(self.ready_key(topic), message.model_dump_json())

    async def publish(
        self,
        topic: str,
        data: dict[str, Any],
        *,
        delay_ms: int | None = None,
        max_attempts: int | None = None,
    ) -> str:
        message = QueueMessage(data=data, max_attempts=max_attempts or self._default_max_attempts)
        await self._enqueue(topic, message, delay_ms or 0)
        logger.debug("queue_message_published", topic=topic, message_id=message.id, delay_ms=delay_ms)
        return message.id

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        self._handlers[topic] = handler
        logger.info("queue_subscribed", topic=topic)

    async def promote_due(self, topic: str) -> int:
        """Move delayed messages whose due time has passed onto the ready list."""
        due = await self._client.zrangebyscore(
            self.delayed_key(topic), "-inf", _epoch_ms(), start=0, num=_PROMOTE_BATCH
        )
        moved = 0
        for raw in due:
            if await self._client.zrem(self.delayed_key(topic), raw):
                await self._client.rpush(self.ready_key(topic), raw)
                moved += 1
        return moved

    async def _handle(self, topic: str, message: QueueMessage) -> None:
        handler = self._handlers[topic]
        message.attempts += 1
        try:
            await handler(message)
        except Exception:
            if message.attempts >= message.max_attempts:
                await self._client.rpush(self.dead_letter_key(topic), message.model_dump_json())
                logger.exception(
                    "queue_message_dead_lettered",
                    topic=topic,
                    message_id=message.id,
                    attempts=message.attempts,
                )
                return
            logger.exception(
                "queue_handler_failed",
                topic=topic,
                message_id=message.id,
                attempts=message.attempts,
            )
            delay_ms = int(self._redelivery_delay * message.attempts * 1000)
            await self._enqueue(topic, message, delay_ms)

    async def poll_once(self, topic: str) -> bool:
        """Promote, then wait up to one poll interval for a message. True if one was handled."""
        await self.promote_due(topic)
        item = await self._client.blpop([self.ready_key(topic)], timeout=self._poll_interval)
        if item is None:
            return False
        _key, raw = item
        await self._handle(topic, QueueMessage.model_validate_json(raw))
        return True

    async def _consume(self, topic: str) -> None:
        while True:
            try:
                await self.poll_once(topic)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("queue_consumer_error", topic=topic)
                await asyncio.sleep(self._poll_interval)

    async def start(self) -> None:
        if self._tasks:
            return
        for topic in self._handlers:
            for _ in range(self._concurrency):
                self._tasks.append(asyncio.create_task(self._consume(topic)))
        logger.info("queue_consumers_started", topics=list(self._handlers), concurrency=self._concurrency)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self._client.aclose()
        logger.info("queue_consumers_stopped")
