"""aiohttp client for subscriber callbacks."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from webhook_service.core.exceptions import DeliveryTransportError


@dataclass(frozen=True)
class HttpResponse:
    status: int
    reason: str = ""
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class WebhookHttpClient:
    """POSTs a prepared body and returns whatever the endpoint answered.

    4xx/5xx are returned, not raised. Only connection errors and timeouts raise
    :class:`DeliveryTransportError`.
    """

    def __init__(self, session: ClientSession | None = None):
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def post(
        self,
        url: str,
        *,
        headers: dict[str, str],
        body: str,
        timeout_s: float,
    ) -> HttpResponse:
        session = await self._get_session()
        try:
            async with session.post(
                url,
                data=body.encode("utf-8"),
                headers=headers,
                timeout=ClientTimeout(total=timeout_s),
                allow_redirects=False,
            ) as resp:
                text = await resp.text(errors="replace")
                return HttpResponse(
                    status=resp.status,
                    reason=resp.reason or "",
                    body=text,
                    headers={k: v for k, v in resp.headers.items()},
                )
        except asyncio.TimeoutError as exc:
            raise DeliveryTransportError(f"Request timed out after {timeout_s:g}s") from exc
        except aiohttp.ClientError as exc:
            raise DeliveryTransportError(str(exc) or exc.__class__.__name__) from exc

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
