from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI

from meshobs import __version__
from meshobs.api import diagnostics as diagnostics_api
from meshobs.api import health as health_api
from meshobs.api import metrics as metrics_api
from meshobs.api import orders as orders_api
from meshobs.api import users as users_api
from meshobs.config import ServiceName, Settings, get_settings
from meshobs.observability.health import HealthAggregator, always_healthy, http_probe
from meshobs.observability.logging import configure_logging
from meshobs.observability.metrics import MetricsRegistry
from meshobs.observability.middleware import CorrelationHeaderMiddleware
from meshobs.observability.propagation import OutboundPropagator
from meshobs.pipeline import Pipeline
from meshobs.services.orders import OrderHandlers
from meshobs.services.users import UserHandlers


PEER_OF: dict[str, ServiceName] = {"user": "order", "order": "user"}


def create_app(
    service: ServiceName | None = None,
    *,
    settings: Settings | None = None,
    metrics: MetricsRegistry | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build one service with its own registry, pipeline, propagator and health checks.

    ``metrics`` and ``client`` exist so tests can isolate the registry and route
    outbound calls to an in-process peer or a mock transport.
    """

    settings = settings or get_settings()
    service = service or settings.service_name
    peer = PEER_OF[service]
    peer_url = settings.peer_url(peer)

    if metrics is None:
        metrics = MetricsRegistry(
            max_label_sets=settings.metrics_max_label_sets,
            max_label_value_length=settings.metrics_max_label_value_length,
        )
    if client is None:
        client = httpx.AsyncClient(timeout=settings.outbound_timeout_seconds)

    pipeline = Pipeline(service, metrics, correlation_header=settings.correlation_header)
    propagator = OutboundPropagator(
        client,
        metrics,
        service=service,
        peers={peer: peer_url},
        header_name=settings.correlation_header,
    )

    checks = HealthAggregator(default_timeout=settings.health_check_timeout_seconds)
    checks.register("self", always_healthy, tags=("live", "ready"))
    # The probe gives up before the check timeout so a hung peer reads as degraded.
    probe = http_probe(client, f"{peer_url}/health", timeout=settings.health_check_timeout_seconds / 2)
    checks.register(f"peer:{peer}", probe, tags=("ready",))

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level, json_logs=settings.log_json)
        log = structlog.get_logger("meshobs").bind(service=service)
        log.info("service_started", peer=peer, peer_url=peer_url)
        try:
            yield
        finally:
            await propagator.aclose()
            log.info("service_stopped")

    app = FastAPI(title=f"{service.title()} Service", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.health = checks
    app.state.pipeline = pipeline
    app.state.propagator = propagator
    app.add_middleware(CorrelationHeaderMiddleware, header_name=settings.correlation_header)

    app.include_router(health_api.router)
    app.include_router(metrics_api.router)
    app.include_router(diagnostics_api.build_router(pipeline))
    if service == "user":
        app.include_router(users_api.build_router(pipeline, UserHandlers(settings, propagator)))
    else:
        app.include_router(orders_api.build_router(pipeline, OrderHandlers(settings, propagator, metrics)))
    return app


def create_user_app() -> FastAPI:
    return create_app("user")


def create_order_app() -> FastAPI:
    return create_app("order")
