"""Shared fixtures: in-memory SQLite, a fake Graph API and a fake queue."""

import os

# Must be set before the app modules read settings
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("META_ACCESS_TOKEN", "test-token")
os.environ.setdefault("META_APP_SECRET", "test-app-secret")
os.environ.setdefault("META_API_TIER", "standard")
os.environ.setdefault("QSTASH_TOKEN", "test-qstash-token")
os.environ.setdefault("QSTASH_CURRENT_SIGNING_KEY", "sig_current_0123456789abcdefghijklmnop")
os.environ.setdefault("QSTASH_NEXT_SIGNING_KEY", "sig_next_0123456789abcdefghijklmnopqrs")
os.environ.setdefault("WEBHOOK_BASE_URL", "https://sync.example.com")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "verify-me")
os.environ.setdefault("CRON_SECRET", "cron-secret")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import app.models.job_models  # noqa: F401
import app.models.meta_models  # noqa: F401
from app.connectors.meta.client import MetaClient
from app.core.rate_limit import TokenBucket
from app.queue.qstash import QStashError

PAUSE_TARGETS = (
    "app.core.rate_limit.pause",
    "app.connectors.meta.client.pause",
    "app.connectors.meta.endpoints.pause",
    "app.sync.cron.pause",
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGraph:
    """Scripted Graph API behind an httpx.MockTransport.

    Responses queue per path (without the version prefix). The last scripted
    response for a path repeats once the queue is drained.
    """

    def __init__(self):
        self.routes: Dict[str, List[Any]] = {}
        self.requests: List[httpx.Request] = []

    def add(
        self,
        path: str,
        body: Any = None,
        status: int = 200,
        headers: Optional[Dict[str, str]] = None,
        raises: Optional[Exception] = None,
    ) -> "FakeGraph":
        self.routes.setdefault(path, []).append((status, body, headers, raises))
        return self

    def error(self, path: str, code: int, message: str = "Error", status: int = 400, **kw) -> "FakeGraph":
        return self.add(path, {"error": {"message": message, "code": code}}, status=status, **kw)

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if self.path_of(r) == path]

    @staticmethod
    def path_of(request: httpx.Request) -> str:
        return request.url.path.split("/", 2)[2]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        scripted = self.routes.get(self.path_of(request))
        if not scripted:
            return httpx.Response(400, json={"error": {"message": "Unknown path", "code": 1}})
        status, body, headers, raises = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        if raises is not None:
            raise raises
        if callable(body):
            body = body(request)
        return httpx.Response(status, json=body if body is not None else {}, headers=headers)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeQueue:
    """Stands in for `enqueue_sync`."""

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []
        self.fail = False

    async def __call__(self, payload: Dict[str, Any], follow_up: bool = False) -> str:
        if self.fail:
            raise QStashError("QStash unavailable", 503)
        self.messages.append({"payload": payload, "follow_up": follow_up})
        return f"msg-{len(self.messages)}"

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [m["payload"] for m in self.messages]


def make_client(graph: FakeGraph, **kwargs: Any) -> MetaClient:
    kwargs.setdefault("access_token", "test-token")
    kwargs.setdefault("ad_account_id", "act_123")
    kwargs.setdefault("app_secret", "")
    kwargs.setdefault("bucket", TokenBucket(10_000, 10_000))
    return MetaClient(transport=graph.transport(), **kwargs)


# ── Fixtures ──


@pytest.fixture(autouse=True)
def pauses(monkeypatch) -> List[float]:
    """Every backoff / pacing pause, recorded instead of slept."""
    recorded: List[float] = []

    async def fake_pause(seconds: float) -> None:
        if seconds > 0:
            recorded.append(seconds)

    for target in PAUSE_TARGETS:
        monkeypatch.setattr(target, fake_pause)
    return recorded


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def meta_client(graph) -> MetaClient:
    return make_client(graph)


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def api(session, graph, queue):
    """TestClient with DB, Meta client and queue swapped for fakes."""
    from app.api.deps import get_enqueue, get_meta_client
    from app.database import get_session
    from app.main import app

    async def override_client():
        client = make_client(graph)
        try:
            yield client
        finally:
            await client.close()

    app.dependency_overrides[get_session] = lambda: session
    app.dependency_overrides[get_meta_client] = override_client
    app.dependency_overrides[get_enqueue] = lambda: queue
    yield TestClient(app)
    app.dependency_overrides.clear()
