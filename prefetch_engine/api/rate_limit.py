"""Per-peer rate limiting for the control API."""

import time

from fastapi import Request


class RateLimiter:
    """Sliding one-minute window rate limiter by peer."""

    def __init__(self, max_requests: int, window_seconds: int = 60, clock=time.monotonic):
        self.max_requests = max_requests
        self.window = window_seconds
        self._clock = clock
        self._hits: dict[str, list[float]] = {}
        self._next_sweep = clock() + window_seconds

    def is_limited(self, peer: str) -> bool:
        now = self._clock()
        window_start = now - self.window
        if now >= self._next_sweep:
            self.prune()
            self._next_sweep = now + self.window
        # Remove expired entries
        hits = [t for t in self._hits.pop(peer, ()) if t > window_start]
        limited = len(hits) >= self.max_requests
        if not limited:
            hits.append(now)
        self._hits[peer] = hits
        return limited

    def prune(self):
        """Forget peers with no hits inside the window."""
        window_start = self._clock() - self.window
        for peer in [p for p, hits in self._hits.items() if not hits or hits[-1] <= window_start]:
            del self._hits[peer]

    def __len__(self) -> int:
        return len(self._hits)

    def reset(self):
        self._hits.clear()


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, else the socket peer."""
    ip = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if not ip:
        ip = request.client.host if request.client else "unknown"
    return ip
