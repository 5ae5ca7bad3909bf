from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

import httpx
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from meshobs.config import get_settings
from meshobs.main import create_app
from meshobs.observability.metrics import MetricsRegistry


class DeferredASGITransport(httpx.AsyncBaseTransport):
    """Routes requests to an ASGI app assigned after construction.

    Lets two in-process services call each other even though each needs the
    other's client at creation time.
    """

    def __init__(self) -> None:
        self.app: FastAPI | None = None

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        assert self.app is not None, "peer app not wired"
        return await ASGITransport(app=self.app).handle_async_request(request)


def peer_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """Outbound client whose peer is simulated by ``handler``."""

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def healthy_peer(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/health":
        return httpx.Response(200, json={"status": "ok"})
    return httpx.Response(404, json={"detail": "not found"})


@dataclass
class Mesh:
    user_app: FastAPI
    order_app: FastAPI
    user_metrics: MetricsRegistry
    order_metrics: MetricsRegistry
    user_api: AsyncClient
    order_api: AsyncClient


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SIMULATE_LATENCY", "false")
    monkeypatch.setenv("USER_SERVICE_URL", "http://user-service")
    monkeypatch.setenv("ORDER_SERVICE_URL", "http://order-service")
    monkeypatch.setenv("HEALTH_CHECK_TIMEOUT_SECONDS", "1")
    monkeypatch.setenv("ENABLE_METRICS_ENDPOINT", "true")
    monkeypatch.delenv("CORRELATION_HEADER", raising=False)
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def user_metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def order_metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def user_app(user_metrics: MetricsRegistry) -> FastAPI:
    return create_app("user", metrics=user_metrics, client=peer_client(healthy_peer))


@pytest.fixture
async def api_client(user_app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=user_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def make_order_app(order_metrics: MetricsRegistry) -> Callable[[Callable[[httpx.Request], httpx.Response]], FastAPI]:
    """Order service whose user-service peer is simulated by a handler."""

    def make(handler: Callable[[httpx.Request], httpx.Response]) -> FastAPI:
        return create_app("order", metrics=order_metrics, client=peer_client(handler))

    return make


@pytest.fixture
async def mesh(user_metrics: MetricsRegistry, order_metrics: MetricsRegistry) -> AsyncIterator[Mesh]:
    """User and order services wired to call each other in-process."""

    to_order = DeferredASGITransport()
    to_user = DeferredASGITransport()
    user_app = create_app("user", metrics=user_metrics, client=httpx.AsyncClient(transport=to_order))
    order_app = create_app("order", metrics=order_metrics, client=httpx.AsyncClient(transport=to_user))
    to_order.app = order_app
    to_user.app = user_app

    async with AsyncClient(transport=ASGITransport(app=user_app), base_url="http://user.test") as user_api:
        async with AsyncClient(transport=ASGITransport(app=order_app), base_url="http://order.test") as order_api:
            yield Mesh(
                user_app=user_app,
                order_app=order_app,
                user_metrics=user_metrics,
                order_metrics=order_metrics,
                user_api=user_api,
                order_api=order_api,
            )
