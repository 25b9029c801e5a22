"""Shared test fixtures and configuration."""

import asyncio
import os

import pytest

# Keep imports of the app module from reaching for real backends
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:1")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from httpx import ASGITransport, AsyncClient  # noqa: E402

from prefetch_engine.config import Settings  # noqa: E402
from prefetch_engine.database import close_db, create_engine, create_session_factory, init_db  # noqa: E402
from prefetch_engine.engine import PrefetchEngine  # noqa: E402
from prefetch_engine.errors import AuthError, AuthUnavailable  # noqa: E402
from prefetch_engine.main import create_app  # noqa: E402
from prefetch_engine.queue import JobQueue  # noqa: E402
from prefetch_engine.services.cache import MemoryTimelineStore, TieredCache  # noqa: E402
from prefetch_engine.services.metrics import MetricsSink  # noqa: E402

TTLS_MS = {"hot": 300_000, "warm": 900_000}
ALL_PERMISSIONS = frozenset({"read", "write", "delete"})


# ═══════════════ FAKES ═══════════════

class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTokenClient:
    def __init__(self):
        self.issued = 0
        self.invalidated = 0
        self.healthy = True

    async def get_service_token(self, target_service, permissions):
        self.issued += 1
        return f"svc-token-{self.invalidated}"

    def invalidate(self, target_service, permissions):
        self.invalidated += 1

    async def ping(self):
        return self.healthy

    async def close(self):
        pass


class FakeOrigin:
    """Origin stand-in: scripted outcomes per user, a default timeline otherwise."""

    def __init__(self):
        self.calls: list[str] = []
        self.scripts: dict[str, list] = {}
        self.delay = 0.0
        self.healthy = True

    def script(self, user_id: str, *outcomes):
        self.scripts.setdefault(user_id, []).extend(outcomes)

    async def fetch_timeline(self, user_id, token):
        self.calls.append(user_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        queued = self.scripts.get(user_id)
        if queued:
            outcome = queued.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return {"entries": [{"id": f"{user_id}-1", "text": "hello"}]}

    async def ping(self):
        return self.healthy


class FakeVerifier:
    def __init__(self):
        self.tokens = {
            "admin-token": ALL_PERMISSIONS,
            "reader-token": frozenset({"read"}),
        }
        self.unavailable = False

    async def verify(self, token):
        if self.unavailable:
            raise AuthUnavailable("Certificate Authority unreachable")
        if token not in self.tokens:
            raise AuthError("Invalid or expired token")
        return self.tokens[token]

    async def close(self):
        pass


# ═══════════════ COMPONENT FIXTURES ═══════════════

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics(clock):
    return MetricsSink(clock=clock)


@pytest.fixture
async def cache(metrics, clock):
    """Tiered cache on the in-memory store, driven by the fake clock."""
    tiered = TieredCache(
        metrics,
        TTLS_MS,
        store=MemoryTimelineStore(TTLS_MS, clock=clock),
        max_bytes=4096,
        clock=clock,
    )
    await tiered.connect()
    yield tiered
    await tiered.close()


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    assert await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
async def queue(db_engine):
    q = JobQueue(
        create_session_factory(db_engine),
        retry_attempts=3,
        backoff_base_ms=10,
        retention_completed=100,
        retention_failed=50,
        stall_interval_ms=30_000,
        poll_interval_ms=20,
    )
    yield q
    await q.close(timeout_ms=1000)


# ═══════════════ ENGINE / API FIXTURES ═══════════════

@pytest.fixture
def engine_settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        worker_enabled=False,
        scheduler_enabled=False,
        worker_concurrency=2,
        queue_poll_interval_ms=20,
        queue_backoff_base_ms=10,
        immediate_backoff_ms=1,
        shutdown_timeout_ms=1000,
    )


@pytest.fixture
def origin():
    return FakeOrigin()


@pytest.fixture
def token_client():
    return FakeTokenClient()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
async def engine(engine_settings, origin, token_client, verifier):
    """Engine with fake CA/origin and an in-memory cache. Worker off by default."""
    eng = PrefetchEngine(
        engine_settings,
        token_client=token_client,
        origin=origin,
        verifier=verifier,
        cache_store=MemoryTimelineStore(engine_settings.tier_ttls_ms),
    )
    await eng.start()
    yield eng
    await eng.stop()


@pytest.fixture
async def client(engine):
    # ASGITransport does not run the lifespan; the engine fixture starts it.
    transport = ASGITransport(app=create_app(engine))
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": "Bearer admin-token"},
    ) as c:
        yield c


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Poll an async or sync predicate until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
