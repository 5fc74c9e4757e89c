"""Background workers.

Each worker module exposes a factory returning an async task function
compatible with :class:`webhook_service.worker.WorkerTask`.
"""
from __future__ import annotations

from webhook_service.workers.webhook_reclaim import create_webhook_reclaim

__all__ = ["create_webhook_reclaim"]
