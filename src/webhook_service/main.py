"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path

from aiohttp import web

from webhook_service.context import WebhookContext, build_context
from webhook_service.db.migrations import create_migration_runner
from webhook_service.db.pool import close_pool, get_pool, init_pool
from webhook_service.events import BUILTIN_EVENTS
from webhook_service.logging_config import configure_logging
from webhook_service.settings import settings

configure_logging(json_output=settings.env != "development")

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
MIGRATION_PATHS = [
    PROJECT_ROOT / "migrations",
    Path("/app/migrations"),
]

CONTEXT_KEY = "webhook_context"


async def healthcheck(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})


def get_context(app: web.Application) -> WebhookContext:
    return app[CONTEXT_KEY]


async def start_webhooks(app: web.Application) -> None:
    context = build_context(await get_pool(), settings)
    app[CONTEXT_KEY] = context
    await context.service.bootstrap_events(BUILTIN_EVENTS)
    await context.start()
    await context.worker.start(app)


async def stop_webhooks(app: web.Application) -> None:
    context = app.get(CONTEXT_KEY)
    if context is None:
        return
    await context.worker.stop(app)
    await context.close()


def create_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/health", healthcheck)
    app.on_startup.append(create_migration_runner(str(settings.database_url), MIGRATION_PATHS))
    app.on_startup.append(init_pool)
    app.on_startup.append(start_webhooks)
    # on_cleanup runs in registration order; the pool must outlive the consumers.
    app.on_cleanup.append(stop_webhooks)
    app.on_cleanup.append(close_pool)
    return app


def main() -> None:
    web.run_app(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
