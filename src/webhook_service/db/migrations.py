"""Apply ``migrations/*.sql`` on startup, tracked by checksum in ``schema_migrations``."""
from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import asyncpg  # type: ignore[import-untyped]
import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

_CONNECT_ATTEMPTS = 5
_CONNECT_RETRY_DELAY_SECONDS = 2.0


def load_migrations(directory: Path) -> dict[str, Path]:
    migrations: dict[str, Path] = {}
    for path in sorted(directory.glob("*.sql")):
        if path.stem in migrations:
            raise ValueError(f"Duplicate migration version detected: {path.stem}")
        migrations[path.stem] = path
    return migrations


async def _connect(database_url: str) -> asyncpg.Connection | None:
    for attempt in range(1, _CONNECT_ATTEMPTS + 1):
        try:
            return await asyncpg.connect(database_url)
        except (OSError, asyncpg.PostgresError) as exc:
            logger.warning("migrations_connect_failed", attempt=attempt, error=str(exc))
            if attempt < _CONNECT_ATTEMPTS:
                await asyncio.sleep(_CONNECT_RETRY_DELAY_SECONDS)
    return None


async def apply_migrations(conn: asyncpg.Connection, migrations: dict[str, Path]) -> list[str]:
    """Apply pending migrations in order; returns the applied versions."""
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version text PRIMARY KEY,
            checksum text NOT NULL,
            applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}

    done: list[str] = []
    for version, path in migrations.items():
        sql = path.read_text(encoding="utf-8")
        checksum = hashlib.sha256(sql.encode("utf-8")).hexdigest()
        if version in applied:
            if applied[version] != checksum:
                raise RuntimeError(
                    f"Checksum mismatch for {version}: {applied[version]} (db) != {checksum} (file)"
                )
            continue
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                version,
                checksum,
            )
        done.append(version)
    return done


def create_migration_runner(
    database_url: str,
    possible_paths: Iterable[Path],
) -> Callable[[web.Application], Awaitable[None]]:
    """Create an aiohttp startup hook that applies SQL migrations."""
    paths = list(possible_paths)

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        directory = next((p for p in paths if p.exists()), None)
        if directory is None:
            logger.warning("migrations_dir_missing", tried=[str(p) for p in paths])
            return
        migrations = load_migrations(directory)
        if not migrations:
            return

        conn = await _connect(database_url)
        if conn is None:
            logger.error("migrations_skipped", reason="database unreachable")
            return
        try:
            applied = await apply_migrations(conn, migrations)
        finally:
            await conn.close()
        logger.info("migrations_applied", versions=applied, pending=len(applied))

    return apply_migrations_on_startup
