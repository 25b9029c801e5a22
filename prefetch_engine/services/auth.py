"""Bearer-token verification against the Certificate Authority.

The CA answers with the token's granted permissions; the permission check
itself happens locally so one cached verification serves every route.
"""

import hashlib
import logging
import time

import httpx
from cachetools import TTLCache

from prefetch_engine.errors import AuthError, AuthUnavailable

logger = logging.getLogger(__name__)


def parse_permissions(raw) -> frozenset[str]:
    """Accept `{"read": true, ...}` or `["read", ...]` from the CA."""
    if isinstance(raw, dict):
        return frozenset(name for name, granted in raw.items() if granted)
    if isinstance(raw, (list, tuple, set)):
        return frozenset(str(name) for name in raw)
    return frozenset()


class TokenVerifier:
    """Validates caller tokens with the CA and caches positive results."""

    def __init__(
        self,
        ca_url: str,
        validate_path: str = "/api/tokens/validate",
        service_id: str = "",
        service_key: str = "",
        timeout_ms: int = 5000,
        cache_ttl_seconds: int = 60,
        max_entries: int = 4096,
        clock=time.monotonic,
    ):
        self.url = f"{ca_url.rstrip('/')}{validate_path}"
        self.service_id = service_id
        self.service_key = service_key
        self.timeout = timeout_ms / 1000
        self._cache: TTLCache = TTLCache(maxsize=max_entries, ttl=cache_ttl_seconds, timer=clock)

    async def verify(self, token: str) -> frozenset[str]:
        """Return the granted permissions. Raises AuthError / AuthUnavailable."""
        key = hashlib.sha256(token.encode()).hexdigest()
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.url,
                    json={"token": token, "requiredPermissions": []},
                    headers={"X-Service-Id": self.service_id, "X-Service-Key": self.service_key},
                )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.warning("CA validate error | %s", str(e)[:200])
            raise AuthUnavailable("Certificate Authority unreachable")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if resp.status_code >= 500:
            logger.warning("CA validate | status=%d | %dms", resp.status_code, elapsed_ms)
            raise AuthUnavailable(f"Certificate Authority error ({resp.status_code})")

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400 or not isinstance(data, dict) or not data.get("valid"):
            logger.info("Caller token rejected | status=%d | %dms", resp.status_code, elapsed_ms)
            raise AuthError("Invalid or expired token")

        permissions = parse_permissions(data.get("permissions"))
        self._cache[key] = permissions
        logger.debug("Caller token verified | perms=%s | %dms", ",".join(sorted(permissions)), elapsed_ms)
        return permissions

    def clear(self):
        self._cache.clear()

    async def close(self):
        self.clear()
