"""HTTP transport for streamed chat completions."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Protocol

import httpx

from sheetstream.config import ClientConfig

from .errors import HTTPStatusFailure

_logger = logging.getLogger(__name__)


class CompletionTransport(Protocol):
    """Anything that can stream the body of a chat completion request."""

    def stream_chat(self, payload: dict[str, Any]) -> AsyncIterator[bytes]:
        """Yield raw response body chunks.  Raise on non-2xx status."""
        ...


class HttpTransport:
    """Streams ``POST {base_url}/chat/completions`` over ``httpx``.

    Connection settings are read from the config on every request, so
    ``configure()`` takes effect for the next attempt without rebuilding the
    underlying client.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(config.timeout, connect=30),
        )

    def configure(self, config: ClientConfig) -> None:
        self._config = config

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    async def stream_chat(self, payload: dict[str, Any]) -> AsyncIterator[bytes]:
        url = f"{self._config.base_url}/chat/completions"
        async with self._client.stream(
            "POST", url,
            json=payload,
            headers=self._headers(),
            timeout=httpx.Timeout(self._config.timeout, connect=30),
        ) as resp:
            if not resp.is_success:
                body = (await resp.aread()).decode("utf-8", errors="replace")
                raise HTTPStatusFailure(resp.status_code, body, resp.reason_phrase)
            _logger.debug("Stream opened: %s %d", url, resp.status_code)
            async for chunk in resp.aiter_bytes():
                yield chunk

    async def close(self) -> None:
        await self._client.aclose()
