from __future__ import annotations

import asyncio
import time
from typing import Callable

import httpx
from loguru import logger

from freshcontext.config import settings


class ReachabilityProbe:
    """Cached network probe.

    One instance is shared per process; the cached answer expires after
    ``ttl_seconds`` on the injected monotonic ``clock``.
    """

    def __init__(
        self,
        *,
        probe_url: str | None = None,
        ttl_seconds: float | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.probe_url = probe_url or settings.reachability_probe_url
        self.ttl_seconds = float(ttl_seconds if ttl_seconds is not None else settings.reachability_ttl_seconds)
        self.timeout = float(timeout if timeout is not None else settings.reachability_timeout_seconds)
        self._clock = clock
        self._transport = transport
        self._cached: bool | None = None
        self._checked_at: float | None = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        return (
            self._cached is not None
            and self._checked_at is not None
            and self._clock() - self._checked_at < self.ttl_seconds
        )

    async def is_online(self) -> bool:
        if self._fresh():
            return bool(self._cached)
        async with self._lock:
            if self._fresh():
                return bool(self._cached)
            online = await self._probe()
            self._cached = online
            self._checked_at = self._clock()
            return online

    def invalidate(self) -> None:
        self._cached = None
        self._checked_at = None

    async def _probe(self) -> bool:
        try:
            async with httpx.AsyncClient(transport=self._transport, follow_redirects=False) as client:
                response = await client.head(self.probe_url, timeout=self.timeout)
        except httpx.HTTPError as exc:
            logger.warning(f"Reachability probe failed: {exc!r}")
            return False
        return response.status_code < 500
