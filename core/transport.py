# core/transport.py
"""Bus transports used by the dispatcher and the event publisher.

The core only needs request/reply and fire-and-forget publishing on named
subjects. ``HttpGatewayTransport`` speaks to an HTTP bridge in front of the
bus: ``POST {base_url}/request/{subject}`` answers with the reply envelope and
``POST {base_url}/publish/{subject}`` acknowledges a publish.
"""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog
from config import settings

logger = structlog.get_logger(__name__)


class TransportError(Exception):
    """The bus could not deliver a message or return a reply."""


class TransportTimeout(TransportError):
    """No reply arrived within the requested timeout."""


class MessageTransport(Protocol):
    async def request(self, subject: str, payload: bytes, timeout: float) -> bytes:
        ...

    async def publish(self, subject: str, payload: bytes) -> None:
        ...

    async def aclose(self) -> None:
        ...


class HttpGatewayTransport:
    """Transport that relays bus traffic through an HTTP gateway."""

    def __init__(
        self,
        base_url: str = settings.BUS_GATEWAY_URL,
        token: str | None = settings.BUS_GATEWAY_TOKEN,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(headers=headers)
        logger.info("HttpGatewayTransport initialized.", base_url=self._base_url)

    async def request(self, subject: str, payload: bytes, timeout: float) -> bytes:
        try:
            response = await self._client.post(
                f"{self._base_url}/request/{subject}", content=payload, timeout=timeout
            )
            response.raise_for_status()
        except httpx.TimeoutException as e_timeout:
            raise TransportTimeout(f"request on '{subject}' timed out") from e_timeout
        except httpx.HTTPStatusError as e_status:
            raise TransportError(
                f"gateway answered {e_status.response.status_code} for '{subject}'"
            ) from e_status
        except httpx.RequestError as e_req:
            raise TransportError(f"request on '{subject}' failed: {e_req}") from e_req
        return response.content

    async def publish(self, subject: str, payload: bytes) -> None:
        try:
            response = await self._client.post(
                f"{self._base_url}/publish/{subject}", content=payload
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"publish on '{subject}' failed: {e}") from e

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
