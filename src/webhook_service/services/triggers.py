"""Fire-and-forget entry point for business code."""
from __future__ import annotations

from typing import Any

import structlog

from webhook_service.services.webhooks import WebhookService

logger = structlog.get_logger(__name__)


async def trigger_webhook(
    service: WebhookService,
    event_name: str,
    payload: Any,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """Trigger *event_name*; never raises.

    A webhook problem must not fail the operation that produced the event, so
    every error is logged and reported as ``False``.
    """
    try:
        await service.trigger_event(event_name, payload, metadata)
    except Exception:
        logger.exception("webhook_trigger_failed", event_name=event_name)
        return False
    return True
