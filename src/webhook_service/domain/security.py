"""Outbound authentication for webhook callbacks.

Each subscription carries exactly one :data:`SubscriptionAuth` variant, built
by :func:`build_auth` when the subscription is loaded. Delivery code only calls
``auth.headers(body, fallback_secret=...)`` and never branches on the scheme.

HMAC signatures cover ``"{timestamp}.{body}"`` where ``timestamp`` is the
``X-Webhook-Timestamp`` header (milliseconds since epoch) and ``body`` is the
exact request body. Receivers recompute it with :func:`verify_hmac_signature`.
"""
from __future__ import annotations

import base64
import hmac
import json
import time
from hashlib import sha256
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field

from webhook_service.domain.enums import SecurityScheme

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
DEFAULT_BASIC_USERNAME = "api"


def serialize_payload(payload: Any) -> str:
    """Render a payload exactly as it goes on the wire."""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def hmac_signature(secret: str, timestamp: str, body: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{body}".encode("utf-8"), sha256
    ).hexdigest()
    return f"sha256={digest}"


def verify_hmac_signature(
    secret: str,
    timestamp: str,
    body: str,
    signature: str,
    *,
    max_age_seconds: float | None = 300.0,
    now_ms: int | None = None,
) -> bool:
    """Check a received signature; stale timestamps are rejected."""
    if max_age_seconds is not None:
        try:
            sent_ms = int(timestamp)
        except ValueError:
            return False
        current_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        if abs(current_ms - sent_ms) > max_age_seconds * 1000:
            return False
    return hmac.compare_digest(hmac_signature(secret, timestamp, body), signature)


class _Auth(BaseModel):
    model_config = ConfigDict(frozen=True)

    def headers(
        self, body: Any, *, fallback_secret: str, timestamp: str | None = None
    ) -> dict[str, str]:
        return {}


class NoAuth(_Auth):
    scheme: Literal[SecurityScheme.NONE] = SecurityScheme.NONE


class BasicAuth(_Auth):
    scheme: Literal[SecurityScheme.BASIC] = SecurityScheme.BASIC
    username: str = DEFAULT_BASIC_USERNAME
    password: str = ""

    def headers(
        self, body: Any, *, fallback_secret: str, timestamp: str | None = None
    ) -> dict[str, str]:
        token = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}


class BearerAuth(_Auth):
    scheme: Literal[SecurityScheme.BEARER] = SecurityScheme.BEARER
    token: str = ""

    def headers(
        self, body: Any, *, fallback_secret: str, timestamp: str | None = None
    ) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


class OAuth2Auth(BearerAuth):
    """Sent as a bearer token; refreshing ``token`` is the owner's job."""

    scheme: Literal[SecurityScheme.OAUTH2] = SecurityScheme.OAUTH2  # type: ignore[assignment]


class HmacAuth(_Auth):
    scheme: Literal[SecurityScheme.HMAC] = SecurityScheme.HMAC
    secret: str | None = None

    def headers(
        self, body: Any, *, fallback_secret: str, timestamp: str | None = None
    ) -> dict[str, str]:
        ts = timestamp if timestamp is not None else str(int(time.time() * 1000))
        signature = hmac_signature(self.secret or fallback_secret, ts, serialize_payload(body))
        return {SIGNATURE_HEADER: signature, TIMESTAMP_HEADER: ts}


SubscriptionAuth = Annotated[
    Union[NoAuth, BasicAuth, BearerAuth, OAuth2Auth, HmacAuth],
    Field(discriminator="scheme"),
]


def build_auth(
    scheme: SecurityScheme | str,
    key: str | None,
    config: Mapping[str, Any] | None = None,
) -> NoAuth | BasicAuth | BearerAuth | OAuth2Auth | HmacAuth:
    scheme = SecurityScheme(scheme)
    config = config or {}
    if scheme is SecurityScheme.BASIC:
        return BasicAuth(
            username=config.get("username") or DEFAULT_BASIC_USERNAME,
            password=key or "",
        )
    if scheme is SecurityScheme.BEARER:
        return BearerAuth(token=key or "")
    if scheme is SecurityScheme.OAUTH2:
        return OAuth2Auth(token=key or "")
    if scheme is SecurityScheme.HMAC:
        return HmacAuth(secret=key or None)
    return NoAuth()
