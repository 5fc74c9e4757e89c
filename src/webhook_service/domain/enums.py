"""Enumerations shared across webhook domain models."""
from __future__ import annotations

from enum import Enum


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    TESTING = "testing"

    @property
    def accepts_deliveries(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TESTING)


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRY = "retry"


class SecurityScheme(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    HMAC = "hmac"
    OAUTH2 = "oauth2"
