"""Service-to-service token client for the Certificate Authority.

Tokens are cached per (target service, permission set) and re-issued once
they come within the safety margin of expiry. Concurrent callers asking for
the same key share a single upstream request.
"""

import asyncio
import logging
import time
from typing import Iterable, NamedTuple

import httpx

from prefetch_engine.errors import AuthUnavailable

logger = logging.getLogger(__name__)


class _CachedToken(NamedTuple):
    token: str
    expires_at: int  # epoch ms


class TokenClient:
    """Obtains and caches short-lived service tokens from the CA."""

    def __init__(
        self,
        ca_url: str,
        service_id: str,
        service_key: str = "",
        token_path: str = "/api/tokens/service",
        expiry_seconds: int = 3600,
        safety_margin_seconds: int = 300,
        timeout_ms: int = 5000,
        max_retries: int = 2,
        clock=time.time,
    ):
        self.ca_url = ca_url.rstrip("/")
        self.service_id = service_id
        self.service_key = service_key
        self.token_path = token_path
        self.expiry_seconds = expiry_seconds
        self.safety_margin_ms = safety_margin_seconds * 1000
        self.timeout = timeout_ms / 1000
        self.max_retries = max_retries
        self._clock = clock
        self._tokens: dict[tuple[str, str], _CachedToken] = {}
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}

    @staticmethod
    def cache_key(target_service: str, permissions: Iterable[str]) -> tuple[str, str]:
        return target_service, ",".join(sorted(set(permissions)))

    async def get_service_token(self, target_service: str, permissions: Iterable[str]) -> str:
        """Return a cached token or issue a new one. Raises AuthUnavailable."""
        key = self.cache_key(target_service, permissions)
        cached = self._tokens.get(key)
        if cached and cached.expires_at > self._now_ms() + self.safety_margin_ms:
            return cached.token

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._issue(key))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def invalidate(self, target_service: str, permissions: Iterable[str]) -> None:
        """Drop a cached token so the next call re-issues it."""
        key = self.cache_key(target_service, permissions)
        if self._tokens.pop(key, None):
            logger.info("Service token invalidated | target=%s | perms=%s", *key)

    async def close(self):
        """Destroy the token cache and abandon in-flight requests."""
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        self._tokens.clear()

    async def ping(self) -> bool:
        """Best-effort CA reachability probe for health reporting."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.ca_url}/health")
                return resp.status_code < 500
        except Exception as e:
            logger.debug("CA ping failed: %s", str(e)[:100])
            return False

    # ─── internals ───

    async def _issue(self, key: tuple[str, str]) -> str:
        target_service, perms = key
        body = {
            "serviceId": self.service_id,
            "targetService": target_service,
            "permissions": {p: True for p in perms.split(",") if p},
            "expirySeconds": self.expiry_seconds,
        }
        headers = {
            "X-Service-Id": self.service_id,
            "X-Service-Key": self.service_key,
        }
        url = f"{self.ca_url}{self.token_path}"
        max_attempts = self.max_retries + 1

        for attempt in range(1, max_attempts + 1):
            start = time.monotonic()
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=body, headers=headers)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                elapsed_ms = int((time.monotonic() - start) * 1000)
                logger.warning(
                    "CA token request error | target=%s | attempt=%d/%d | %dms | %s",
                    target_service, attempt, max_attempts, elapsed_ms, str(e)[:200],
                )
                if attempt < max_attempts:
                    continue
                raise AuthUnavailable(f"Certificate Authority unreachable: {str(e)[:100]}")

            elapsed_ms = int((time.monotonic() - start) * 1000)
            if resp.status_code >= 500 and attempt < max_attempts:
                logger.warning(
                    "CA token request | status=%d | attempt=%d/%d | %dms",
                    resp.status_code, attempt, max_attempts, elapsed_ms,
                )
                continue
            if resp.status_code >= 400:
                raise AuthUnavailable(f"Certificate Authority refused token request ({resp.status_code})")

            return self._store(key, resp, elapsed_ms)

        raise AuthUnavailable("Certificate Authority returned no token")

    def _store(self, key: tuple[str, str], resp: httpx.Response, elapsed_ms: int) -> str:
        try:
            data = resp.json()
        except ValueError:
            data = {}
        token = data.get("token") if isinstance(data, dict) else None
        if isinstance(token, dict):
            token = token.get("id")
        if not token or data.get("success") is False:
            raise AuthUnavailable("Certificate Authority returned no token")

        expires_at = data.get("expiresAt") or self._now_ms() + self.expiry_seconds * 1000
        if expires_at <= self._now_ms() + self.safety_margin_ms:
            raise AuthUnavailable("Certificate Authority issued a token inside the safety margin")

        self._tokens[key] = _CachedToken(str(token), int(expires_at))
        logger.info(
            "Service token issued | target=%s | perms=%s | expires_in=%ds | %dms",
            key[0], key[1], (int(expires_at) - self._now_ms()) // 1000, elapsed_ms,
        )
        return str(token)

    def _forget(self, key: tuple[str, str], task: asyncio.Future):
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Token issue failed | target=%s | %s", key[0], str(task.exception())[:100])

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)
