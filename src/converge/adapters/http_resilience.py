"""Rate-limited HTTP client used by provider adapters."""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING, Self

import httpx
from aiolimiter import AsyncLimiter

if TYPE_CHECKING:
    from types import TracebackType

    from converge.config import HttpProviderConfig, RateLimit

log = getLogger(__name__)


def build_limiter(ratelimit: RateLimit | None) -> AsyncLimiter | None:
    if ratelimit is None:
        return None
    return AsyncLimiter(ratelimit.max_calls, ratelimit.per_seconds)


async def _log_response(response: httpx.Response) -> None:
    request = response.request
    log.debug("%s %s -> %s", request.method, request.url, response.status_code)


class ResilientClient:
    """``httpx.AsyncClient`` for one provider, throttled by an optional limiter.

    Nothing is retried here; the executor retries whole changes. Several
    short-lived clients share a rate limit by sharing ``limiter``.
    """

    def __init__(
        self,
        config: HttpProviderConfig,
        *,
        limiter: AsyncLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._limiter = limiter if limiter is not None else build_limiter(config.ratelimit)
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            headers=dict(config.default_headers or {}),
            event_hooks={"response": [_log_response]},
            transport=transport,
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: object = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        effective_timeout = timeout if timeout is not None else self.config.timeout_seconds
        if self._limiter is None:
            return await self._client.request(method, path, json=json, timeout=effective_timeout)
        async with self._limiter:
            return await self._client.request(method, path, json=json, timeout=effective_timeout)

    async def get(self, path: str, *, timeout: float | None = None) -> httpx.Response:
        return await self.request("GET", path, timeout=timeout)

    async def post(
        self, path: str, *, json: object = None, timeout: float | None = None
    ) -> httpx.Response:
        return await self.request("POST", path, json=json, timeout=timeout)

    async def put(
        self, path: str, *, json: object = None, timeout: float | None = None
    ) -> httpx.Response:
        return await self.request("PUT", path, json=json, timeout=timeout)

    async def delete(self, path: str, *, timeout: float | None = None) -> httpx.Response:
        return await self.request("DELETE", path, timeout=timeout)
