"""Queue contract used by the trigger path and the delivery executor.

Backends guarantee at-least-once delivery, honour ``delay_ms`` without a
worker sleeping, and redeliver a message whose handler raised until
``max_attempts`` is reached (then dead-letter it).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol
from uuid import uuid4

from pydantic import BaseModel, Field

DEFAULT_MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueMessage(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    data: dict[str, Any]
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    created_at: datetime = Field(default_factory=utcnow)
    process_after: datetime | None = None


MessageHandler = Callable[[QueueMessage], Awaitable[None]]


class DeliveryQueue(Protocol):
    async def publish(
        self,
        topic: str,
        data: dict[str, Any],
        *,
        delay_ms: int | None = None,
        max_attempts: int | None = None,
    ) -> str: ...

    def subscribe(self, topic: str, handler: MessageHandler) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...
