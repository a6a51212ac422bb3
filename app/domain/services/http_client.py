"""
Outbound HTTP capability used for subscriber and pharmacy calls.

The dispatcher only depends on ``HttpClient.post(url, headers, body)``;
pharmacy lookups also use ``get``. ``HttpxClient`` is the production
implementation and tests swap in a fake.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx

from app.core.exceptions import ServiceTimeoutError, UpstreamFailureError
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HttpClient(Protocol):
    async def post(self, url: str, headers: dict[str, str], body: str) -> HttpResponse:
        ...

    async def get(self, url: str, headers: dict[str, str]) -> HttpResponse:
        ...


class HttpxClient:
    """httpx-backed client; every request is bounded by ``timeout_seconds``"""

    def __init__(self, timeout_seconds: float = 10.0, service_name: str = "webhook"):
        self.timeout_seconds = timeout_seconds
        self.service_name = service_name

    async def post(self, url: str, headers: dict[str, str], body: str) -> HttpResponse:
        return await self._request("POST", url, headers, body.encode("utf-8"))

    async def get(self, url: str, headers: dict[str, str]) -> HttpResponse:
        return await self._request("GET", url, headers)

    async def _request(
        self, method: str, url: str, headers: dict[str, str], content: bytes | None = None
    ) -> HttpResponse:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.request(method, url, content=content, headers=headers)
        except httpx.TimeoutException as e:
            raise ServiceTimeoutError(self.service_name, self.timeout_seconds) from e
        except httpx.TransportError as e:
            raise UpstreamFailureError(
                self.service_name,
                f"network error: {e.__class__.__name__}: {e}",
                details={"url": url},
            ) from e

        return HttpResponse(status=response.status_code, body=response.text)
