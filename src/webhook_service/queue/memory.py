"""asyncio-backed queue for single-process deployments and tests."""
from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import timedelta
from typing import Any

import structlog

from webhook_service.queue.base import DEFAULT_MAX_ATTEMPTS, MessageHandler, QueueMessage, utcnow

logger = structlog.get_logger(__name__)


class InMemoryDeliveryQueue:
    """Per-topic :class:`asyncio.Queue` with ``call_later`` for delayed messages.

    Messages do not survive a restart; use :class:`RedisDeliveryQueue` when
    more than one process consumes the topic.
    """

    def __init__(
        self,
        *,
        concurrency: int = 10,
        redelivery_delay_seconds: float = 5.0,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._concurrency = concurrency
        self._redelivery_delay = redelivery_delay_seconds
        self._default_max_attempts = default_max_attempts
        self._ready: dict[str, asyncio.Queue[QueueMessage]] = {}
        self._handlers: dict[str, MessageHandler] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._tasks: list[asyncio.Task[None]] = []
        self.dead_letters: dict[str, list[QueueMessage]] = defaultdict(list)

    def _queue(self, topic: str) -> asyncio.Queue[QueueMessage]:
        if topic not in self._ready:
            self._ready[topic] = asyncio.Queue()
        return self._ready[topic]

    def _schedule(self, topic: str, message: QueueMessage, delay_seconds: float) -> None:
        queue = self._queue(topic)
        if delay_seconds <= 0:
            message.process_after = None
            queue.put_nowait(message)
            return
        message.process_after = utcnow() + timedelta(seconds=delay_seconds)

        def _release() -> None:
            self._timers.discard(handle)
            queue.put_nowait(message)

        handle = asyncio.get_running_loop().call_later(delay_seconds, _release)
        self._timers.add(handle)

    async def publish(
        self,
        topic: str,
        data: dict[str, Any],
        *,
        delay_ms: int | None = None,
        max_attempts: int | None = None,
    ) -> str:
        message = QueueMessage(data=data, max_attempts=max_attempts or self._default_max_attempts)
        self._schedule(topic, message, (delay_ms or 0) / 1000)
        logger.debug("queue_message_published", topic=topic, message_id=message.id, delay_ms=delay_ms)
        return message.id

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        self._handlers[topic] = handler
        self._queue(topic)
        logger.info("queue_subscribed", topic=topic)

    def ready_count(self, topic: str) -> int:
        return self._queue(topic).qsize()

    def delayed_count(self) -> int:
        return len(self._timers)

    async def _handle(self, topic: str, message: QueueMessage) -> None:
        handler = self._handlers[topic]
        message.attempts += 1
        try:
            await handler(message)
        except Exception:
            if message.attempts >= message.max_attempts:
                self.dead_letters[topic].append(message)
                logger.exception(
                    "queue_message_dead_lettered",
                    topic=topic,
                    message_id=message.id,
                    attempts=message.attempts,
                )
            else:
                logger.exception(
                    "queue_handler_failed",
                    topic=topic,
                    message_id=message.id,
                    attempts=message.attempts,
                )
                self._schedule(topic, message, self._redelivery_delay * message.attempts)

    async def run_ready(self, topic: str) -> int:
        """Handle every message that is ready right now, inline. Returns the count."""
        queue = self._queue(topic)
        handled = 0
        while not queue.empty():
            await self._handle(topic, queue.get_nowait())
            handled += 1
        return handled

    async def _consume(self, topic: str) -> None:
        queue = self._queue(topic)
        while True:
            message = await queue.get()
            try:
                await self._handle(topic, message)
            finally:
                queue.task_done()

    async def start(self) -> None:
        if self._tasks:
            return
        for topic in self._handlers:
            for _ in range(self._concurrency):
                self._tasks.append(asyncio.create_task(self._consume(topic)))
        logger.info("queue_consumers_started", topics=list(self._handlers), concurrency=self._concurrency)

    async def stop(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("queue_consumers_stopped")
