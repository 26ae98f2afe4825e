"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

# Required settings must exist before app.config is imported
os.environ.setdefault("SHOPIFY_API_KEY", "test-api-key")
os.environ.setdefault("SHOPIFY_API_SECRET", "test-api-secret")
os.environ.setdefault("APP_URL", "https://bridge.example.com")
os.environ.setdefault("STORAGE_BACKEND", "memory")

from app.config import Settings  # noqa: E402
from app.services.storage import CachedCollection, MemoryStore  # noqa: E402

TEST_SECRET = "test-api-secret"
TEST_API_KEY = "test-api-key"
TEST_APP_URL = "https://bridge.example.com"
SHOP_A = "shop-a.myshopify.com"
SHOP_B = "shop-b.myshopify.com"


class FakeShopify:
    """
    httpx.MockTransport handler with per-route response queues.

    Each route keeps a list of (status, json, headers) specs; responses are
    served in order and the last one repeats once the queue is down to one.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, *specs):
        """Queue responses for method+path. A spec is (status, json[, headers]) or a callable."""
        self.routes.setdefault((method.upper(), path), []).extend(specs)
        return self

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"errors": "Not Found"})
        spec = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(spec):
            return spec(request)
        status, body, *rest = spec
        headers = rest[0] if rest else {}
        return httpx.Response(status, json=body, headers=headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class SleepRecorder:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_settings(**overrides) -> Settings:
    values = {
        "shopify_api_key": TEST_API_KEY,
        "shopify_api_secret": TEST_SECRET,
        "app_url": TEST_APP_URL,
        "storage_backend": "memory",
        "retry_base_delay_seconds": 0.5,
        "retry_max_attempts": 3,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_collection(name: str = "test", store=None) -> CachedCollection:
    return CachedCollection(store if store is not None else MemoryStore(), name)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_shopify() -> FakeShopify:
    return FakeShopify()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store_factory() -> Callable[..., CachedCollection]:
    return make_collection
