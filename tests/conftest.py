import os

# must be set before utils.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["WEBHOOK_SECRET"] = "hook-secret"
os.environ["ADMIN_AUTH_SECRET"] = "admin-secret"
os.environ["HETZNER_API_TOKEN"] = "hz-token"
os.environ["CF_API_TOKEN"] = "cf-token"
os.environ["CF_ZONE_ID"] = "zone"
os.environ["CF_MC_RECORD_ID"] = "record"
os.environ["HEALTH_CHECK_INTERVAL_SECONDS"] = "0"

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from exceptions import UpstreamError
from models.base import Base
from models import history, server, whitelist  # noqa: F401
from services.orchestrator import LifecycleOrchestrator
from services.state_store import StateStore
from utils.cost import server_type_for
from utils.hetzner_client import CreatedServer, ProviderServer
from utils.rcon_client import RconResult

T0 = datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class StubProvider:
    """In-memory stand-in for HetznerClient."""

    def __init__(self):
        self.servers: dict[str, ProviderServer] = {}
        self.calls: list[tuple[str, str]] = []
        self.user_data: str | None = None
        self.fail_create: Exception | None = None
        self.fail_delete: Exception | None = None
        self.fail_shutdown: Exception | None = None
        self.fail_get: Exception | None = None
        self._next_id = 100

    def add(self, server_id: str, status: str = "running", ip: str = "203.0.113.7") -> None:
        self.servers[server_id] = ProviderServer(server_id, f"grovemc-{server_id}", status, ip, "cx33")

    async def create_server(self, region, user_data):
        self.calls.append(("create", region))
        self.user_data = user_data
        if self.fail_create:
            raise self.fail_create
        self._next_id += 1
        sid = str(self._next_id)
        self.add(sid, status="initializing")
        return CreatedServer(id=sid, ip="203.0.113.7", server_type=server_type_for(region))

    async def get_server(self, server_id):
        self.calls.append(("get", server_id))
        if self.fail_get:
            raise self.fail_get
        return self.servers.get(server_id)

    async def delete_server(self, server_id):
        self.calls.append(("delete", server_id))
        if self.fail_delete:
            raise self.fail_delete
        self.servers.pop(server_id, None)

    async def shutdown_server(self, server_id):
        self.calls.append(("shutdown", server_id))
        if self.fail_shutdown:
            raise self.fail_shutdown

    async def get_metrics(self, server_id):
        return None

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


class StubDns:
    def __init__(self):
        self.ips: list[str] = []
        self.fail: Exception | None = None

    async def update_record(self, ip):
        if self.fail:
            raise self.fail
        self.ips.append(ip)


class StubRcon:
    def __init__(self, result: RconResult | None = None):
        self.result = result or RconResult(success=True, response="ok")
        self.calls: list[tuple] = []

    async def __call__(self, host, port, password, command, timeout=5.0):
        self.calls.append((host, port, password, command))
        return self.result


class StubSleep:
    def __init__(self):
        self.waits: list[float] = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


@pytest_asyncio.fixture
async def session_maker():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_maker) -> StateStore:
    s = StateStore(session_maker)
    await s.ensure_server_state()
    return s


@pytest.fixture
def clock(monkeypatch) -> FakeClock:
    c = FakeClock()
    monkeypatch.setattr("services.orchestrator.utcnow", c)
    return c


@pytest.fixture
def provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def dns() -> StubDns:
    return StubDns()


@pytest.fixture
def rcon() -> StubRcon:
    return StubRcon()


@pytest.fixture
def sleeper() -> StubSleep:
    return StubSleep()


@pytest.fixture
def orchestrator(store, provider, dns, rcon, sleeper, clock) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(
        store,
        provider,
        dns,
        webhook_url="https://control.test/api/mc/webhook",
        webhook_secret="hook-secret",
        grace_period=30,
        sleep=sleeper,
        rcon=rcon,
    )


@pytest.fixture
def upstream_down() -> UpstreamError:
    return UpstreamError("Hetzner API error: 503 Service Unavailable")
