"""Webhook repositories (event catalog, subscriptions, delivery history)."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Iterable, List, Tuple
from uuid import UUID

from asyncpg import Pool  # type: ignore[import-untyped]

from webhook_service.domain.enums import DeliveryStatus, SubscriptionStatus
from webhook_service.domain.webhooks import (
    WebhookDelivery,
    WebhookEvent,
    WebhookEventCreateDTO,
    WebhookSubscription,
    WebhookSubscriptionCreateDTO,
    WebhookSubscriptionUpdateDTO,
)
from webhook_service.repositories.base import BaseRepository


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class WebhookEventRepository(BaseRepository):
    json_columns = ("sample_payload",)

    def __init__(self, pool: Pool):
        super().__init__(pool)

    def _to_model(self, record) -> WebhookEvent:
        return WebhookEvent.model_validate(self._normalize(record))

    async def get_by_name(self, name: str) -> WebhookEvent | None:
        record = await self._fetchrow("SELECT * FROM webhook_events WHERE name = $1", name)
        return self._to_model(record) if record else None

    async def create(self, data: WebhookEventCreateDTO) -> WebhookEvent | None:
        """Insert the event; ``None`` when the name is already taken."""
        record = await self._fetchrow(
            """
            INSERT INTO webhook_events (name, display_name, description, category, sample_payload)
            VALUES ($1, $2, $3, $4, $5::jsonb)
            ON CONFLICT (name) DO NOTHING
            RETURNING *
            """,
            data.name,
            data.display_name or data.name,
            data.description,
            data.category,
            self._dump(data.sample_payload),
        )
        return self._to_model(record) if record else None

    async def list_all(self) -> List[WebhookEvent]:
        records = await self._fetch("SELECT * FROM webhook_events ORDER BY category ASC, name ASC")
        return [self._to_model(r) for r in records]

    async def list_existing_names(self, names: Iterable[str]) -> set[str]:
        records = await self._fetch(
            "SELECT name FROM webhook_events WHERE name = ANY($1::text[])", list(names)
        )
        return {r["name"] for r in records}


class WebhookSubscriptionRepository(BaseRepository):
    json_columns = ("security_config", "custom_headers", "filters")

    _WRITABLE = (
        "name",
        "description",
        "status",
        "endpoint_url",
        "events",
        "security_scheme",
        "security_key",
        "security_config",
        "content_type",
        "max_retries",
        "timeout",
        "custom_headers",
        "filters",
    )

    def __init__(self, pool: Pool):
        super().__init__(pool)

    def _to_model(self, record) -> WebhookSubscription:
        return WebhookSubscription.model_validate(self._normalize(record))

    def _param(self, column: str, index: int) -> str:
        if column in self.json_columns:
            return f"${index}::jsonb"
        if column == "events":
            return f"${index}::text[]"
        return f"${index}"

    def _value(self, column: str, value: Any) -> Any:
        if column in self.json_columns:
            return self._dump(value)
        return _column_value(value)

    async def get(self, subscription_id: UUID) -> WebhookSubscription | None:
        record = await self._fetchrow(
            "SELECT * FROM webhook_subscriptions WHERE id = $1", subscription_id
        )
        return self._to_model(record) if record else None

    async def list_active_containing_event(self, event_name: str) -> List[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_subscriptions
            WHERE status = $1
              AND $2 = ANY(events)
            ORDER BY created_at ASC
            """,
            SubscriptionStatus.ACTIVE.value,
            event_name,
        )
        return [self._to_model(r) for r in records]

    async def list_by_subscriber(
        self, subscriber_id: str, subscriber_type: str
    ) -> List[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_subscriptions
            WHERE subscriber_id = $1 AND subscriber_type = $2
            ORDER BY name ASC
            """,
            subscriber_id,
            subscriber_type,
        )
        return [self._to_model(r) for r in records]

    async def create(self, data: WebhookSubscriptionCreateDTO) -> WebhookSubscription:
        columns = ["subscriber_id", "subscriber_type", *self._WRITABLE]
        payload = data.model_dump()
        placeholders = [self._param(column, idx) for idx, column in enumerate(columns, start=1)]
        record = await self._fetchrow(
            f"""
            INSERT INTO webhook_subscriptions ({", ".join(columns)})
            VALUES ({", ".join(placeholders)})
            RETURNING *
            """,
            *[self._value(column, payload[column]) for column in columns],
        )
        assert record is not None
        return self._to_model(record)

    async def update(
        self, subscription_id: UUID, updates: WebhookSubscriptionUpdateDTO
    ) -> WebhookSubscription | None:
        changes = updates.changes()
        sets: list[str] = []
        values: list[Any] = [subscription_id]
        for column in self._WRITABLE:
            if column not in changes:
                continue
            values.append(self._value(column, changes[column]))
            sets.append(f"{column} = {self._param(column, len(values))}")
        sets.append("updated_at = now()")
        record = await self._fetchrow(
            f"""
            UPDATE webhook_subscriptions
            SET {", ".join(sets)}
            WHERE id = $1
            RETURNING *
            """,
            *values,
        )
        return self._to_model(record) if record else None

    async def delete(self, subscription_id: UUID) -> bool:
        record = await self._fetchrow(
            "DELETE FROM webhook_subscriptions WHERE id = $1 RETURNING id", subscription_id
        )
        return record is not None

    async def record_success(self, subscription_id: UUID, at: datetime) -> None:
        # Counters are incremented in SQL so concurrent workers never lose updates.
        await self._execute(
            """
            UPDATE webhook_subscriptions
            SET success_count = success_count + 1,
                last_success_at = $2,
                updated_at = now()
            WHERE id = $1
            """,
            subscription_id,
            at,
        )

    async def record_failure(self, subscription_id: UUID, at: datetime) -> None:
        await self._execute(
            """
            UPDATE webhook_subscriptions
            SET failure_count = failure_count + 1,
                last_failure_at = $2,
                updated_at = now()
            WHERE id = $1
            """,
            subscription_id,
            at,
        )


class WebhookDeliveryRepository(BaseRepository):
    json_columns = ("payload", "request_headers", "response_headers", "error_detail", "metadata")

    _UPDATABLE = frozenset(
        {
            "status",
            "request_headers",
            "response_status",
            "response_body",
            "response_headers",
            "responded_at",
            "duration_ms",
            "retry_count",
            "next_retry_at",
            "error",
            "error_detail",
        }
    )

    def __init__(self, pool: Pool):
        super().__init__(pool)

    def _to_model(self, record) -> WebhookDelivery:
        return WebhookDelivery.model_validate(self._normalize(record))

    async def create(
        self,
        *,
        subscription_id: UUID,
        event_name: str,
        event_id: str,
        payload: Any,
        metadata: dict[str, Any] | None = None,
    ) -> WebhookDelivery:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_deliveries (
                subscription_id, event_name, event_id, status, payload, metadata, retry_count
            )
            VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, 0)
            RETURNING *
            """,
            subscription_id,
            event_name,
            event_id,
            DeliveryStatus.PENDING.value,
            self._dump(payload),
            self._dump(metadata or {}),
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, delivery_id: UUID) -> WebhookDelivery | None:
        record = await self._fetchrow("SELECT * FROM webhook_deliveries WHERE id = $1", delivery_id)
        return self._to_model(record) if record else None

    async def update(self, delivery_id: UUID, **changes: Any) -> WebhookDelivery | None:
        unknown = set(changes) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update delivery columns: {sorted(unknown)}")
        sets: list[str] = []
        values: list[Any] = [delivery_id]
        for column, value in changes.items():
            if column in self.json_columns:
                values.append(self._dump(value))
                sets.append(f"{column} = ${len(values)}::jsonb")
            else:
                values.append(_column_value(value))
                sets.append(f"{column} = ${len(values)}")
        sets.append("updated_at = now()")
        record = await self._fetchrow(
            f"""
            UPDATE webhook_deliveries
            SET {", ".join(sets)}
            WHERE id = $1
            RETURNING *
            """,
            *values,
        )
        return self._to_model(record) if record else None

    async def list_by_subscription(
        self, subscription_id: UUID, *, limit: int = 100, offset: int = 0
    ) -> Tuple[List[WebhookDelivery], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_deliveries
            WHERE subscription_id = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            subscription_id,
            limit,
            offset,
        )
        items: List[WebhookDelivery] = []
        total: int | None = None
        for rec in records:
            rec_dict = dict(rec)
            total_value = rec_dict.pop("total_count", None)
            if total_value is not None:
                total = int(total_value)
            items.append(self._to_model(rec_dict))
        if total is None:
            total = await self._count_by_subscription(subscription_id)
        return items, total

    async def _count_by_subscription(self, subscription_id: UUID) -> int:
        record = await self._fetchrow(
            "SELECT COUNT(*) AS total FROM webhook_deliveries WHERE subscription_id = $1",
            subscription_id,
        )
        return int(record["total"]) if record else 0

    async def list_stranded(self, before: datetime, *, limit: int = 100) -> List[WebhookDelivery]:
        """Deliveries that should have been processed before *before* but were not.

        ``retry`` rows whose ``next_retry_at`` passed, and ``pending`` rows not
        touched since then (e.g. the publish after insert failed).
        """
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_deliveries
            WHERE (status = 'retry' AND next_retry_at < $1)
               OR (status = 'pending' AND updated_at < $1)
            ORDER BY updated_at ASC
            LIMIT $2
            """,
            before,
            limit,
        )
        return [self._to_model(r) for r in records]
