"""Webhook domain primitives."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from webhook_service.domain.enums import DeliveryStatus, SecurityScheme, SubscriptionStatus
from webhook_service.domain.security import NoAuth, SubscriptionAuth, build_auth


class WebhookEvent(BaseModel):
    id: UUID
    name: str
    display_name: str
    category: str
    description: str | None = None
    sample_payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class WebhookSubscription(BaseModel):
    id: UUID
    subscriber_id: str
    subscriber_type: str
    name: str
    description: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    endpoint_url: str
    events: list[str]
    security_scheme: SecurityScheme = SecurityScheme.NONE
    security_key: str | None = None
    security_config: dict[str, Any] = Field(default_factory=dict)
    content_type: str | None = None
    max_retries: int | None = None
    timeout: float | None = None
    custom_headers: dict[str, str] = Field(default_factory=dict)
    filters: dict[str, Any] = Field(default_factory=dict)
    success_count: int = 0
    failure_count: int = 0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    # Derived from security_* on load; never persisted.
    auth: SubscriptionAuth = Field(default_factory=NoAuth, exclude=True)

    @model_validator(mode="after")
    def _resolve_auth(self) -> "WebhookSubscription":
        self.auth = build_auth(self.security_scheme, self.security_key, self.security_config)
        return self


class WebhookDelivery(BaseModel):
    id: UUID
    subscription_id: UUID
    event_name: str
    event_id: str
    status: DeliveryStatus
    payload: Any
    request_headers: dict[str, str] = Field(default_factory=dict)
    response_status: int | None = None
    response_body: str | None = None
    response_headers: dict[str, str] = Field(default_factory=dict)
    responded_at: datetime | None = None
    duration_ms: int | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = None
    error: str | None = None
    error_detail: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class WebhookEventCreateDTO(BaseModel):
    name: str = Field(min_length=1)
    category: str = Field(min_length=1)
    display_name: str | None = None
    description: str | None = None
    sample_payload: dict[str, Any] = Field(default_factory=dict)


class WebhookSubscriptionCreateDTO(BaseModel):
    subscriber_id: str
    subscriber_type: str
    name: str = Field(min_length=1)
    description: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    endpoint_url: str = Field(min_length=1)
    events: list[str] = Field(min_length=1)
    security_scheme: SecurityScheme = SecurityScheme.NONE
    security_key: str | None = None
    security_config: dict[str, Any] = Field(default_factory=dict)
    content_type: str | None = None
    max_retries: int | None = Field(default=None, ge=0)
    timeout: float | None = Field(default=None, gt=0)
    custom_headers: dict[str, str] = Field(default_factory=dict)
    filters: dict[str, Any] = Field(default_factory=dict)


class WebhookSubscriptionUpdateDTO(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: SubscriptionStatus | None = None
    endpoint_url: str | None = Field(default=None, min_length=1)
    events: list[str] | None = Field(default=None, min_length=1)
    security_scheme: SecurityScheme | None = None
    security_key: str | None = None
    security_config: dict[str, Any] | None = None
    content_type: str | None = None
    max_retries: int | None = Field(default=None, ge=0)
    timeout: float | None = Field(default=None, gt=0)
    custom_headers: dict[str, str] | None = None
    filters: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        """Explicitly set fields; ``None`` only clears the nullable ones."""
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None or key in _NULLABLE_SUBSCRIPTION_FIELDS
        }


_NULLABLE_SUBSCRIPTION_FIELDS = frozenset(
    {"description", "security_key", "content_type", "max_retries", "timeout"}
)
