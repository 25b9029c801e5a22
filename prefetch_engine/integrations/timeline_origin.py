"""Origin timeline service integration.

Endpoint: GET {timeline_service_url}/timelines/{userId}?limit=N
Auth: bearer service token issued by the Certificate Authority.
"""

import logging
import time
from typing import Any
from urllib.parse import quote

import httpx

from prefetch_engine.errors import (
    OriginPermanentError,
    OriginTransientError,
    OriginUnauthorized,
)

logger = logging.getLogger(__name__)

EMPTY_TIMELINE: dict[str, Any] = {"entries": []}


class TimelineOriginClient:
    """Async client for the origin timeline service."""

    def __init__(self, base_url: str, timeout_ms: int = 10_000, max_entries: int = 100):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_ms / 1000
        self.max_entries = max_entries

    async def fetch_timeline(self, user_id: str, token: str) -> Any:
        """Fetch one user's timeline. The body is returned untouched."""
        url = f"{self.base_url}/timelines/{quote(user_id, safe='')}"
        params = {"limit": str(self.max_entries)}
        headers = {"Authorization": f"Bearer {token}"}

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Origin timeout | user=%s | %dms", user_id, elapsed_ms)
            raise OriginTransientError(f"origin timeout after {elapsed_ms}ms")
        except httpx.TransportError as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Origin connection error | user=%s | %dms | %s", user_id, elapsed_ms, str(e)[:200])
            raise OriginTransientError(f"origin connection error: {str(e)[:100]}")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        status = resp.status_code

        if status == 404:
            logger.info("Origin 404 | user=%s | %dms | caching empty timeline", user_id, elapsed_ms)
            return dict(EMPTY_TIMELINE)
        if status == 401:
            logger.warning("Origin rejected token | user=%s | %dms", user_id, elapsed_ms)
            raise OriginUnauthorized("origin rejected service token", status)
        if status >= 500:
            logger.warning("Origin error | user=%s | status=%d | %dms", user_id, status, elapsed_ms)
            raise OriginTransientError(f"origin returned {status}", status)
        if status >= 400:
            logger.warning("Origin refused | user=%s | status=%d | %dms", user_id, status, elapsed_ms)
            raise OriginPermanentError(f"origin returned {status}", status)

        try:
            body = resp.json()
        except ValueError:
            raise OriginPermanentError("origin returned a non-JSON body", status)

        logger.info("Origin OK | user=%s | %dms", user_id, elapsed_ms)
        return body

    async def ping(self) -> bool:
        """Best-effort reachability probe for health reporting."""
        try:
            async with httpx.AsyncClient(timeout=min(self.timeout, 3.0)) as client:
                resp = await client.get(f"{self.base_url}/health")
                return resp.status_code < 500
        except Exception as e:
            logger.debug("Origin ping failed: %s", str(e)[:100])
            return False
