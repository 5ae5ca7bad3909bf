from __future__ import annotations

import httpx
import pytest

from meshobs.observability.metrics import MetricsRegistry
from meshobs.observability.propagation import (
    NetworkErrorKind,
    OutboundPropagator,
    PeerFailure,
    PeerRequest,
    PeerResponse,
)
from meshobs.pipeline import FailureKind, RequestContext
from meshobs.pipeline.results import status_for

from conftest import peer_client


def _ctx(correlation_id: str = "cid-outbound") -> RequestContext:
    ctx = RequestContext(service="order", operation="create_order", method="POST", path="/api/orders")
    ctx.bind_correlation_id(correlation_id)  # type: ignore[arg-type]
    return ctx


def _propagator(handler, registry: MetricsRegistry) -> OutboundPropagator:  # noqa: ANN001
    return OutboundPropagator(
        peer_client(handler),
        registry,
        service="order",
        peers={"user": "http://user-service/"},
        header_name="X-Correlation-ID",
    )


VALIDATE = PeerRequest(peer="user", operation="validate_user", method="GET", path="/api/users/1")


async def test_injects_correlation_header_and_records_success() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": 1})

    registry = MetricsRegistry()
    result = await _propagator(handler, registry).call(VALIDATE, _ctx())

    assert isinstance(result, PeerResponse)
    assert result.body == {"id": 1}
    assert seen[0].headers["X-Correlation-ID"] == "cid-outbound"
    assert str(seen[0].url) == "http://user-service/api/users/1"
    assert registry.value("order_outbound_requests_total", peer="user", operation="validate_user", outcome="success") == 1
    assert registry.value("order_outbound_request_duration_seconds", operation="validate_user") == 1


async def test_caller_headers_cannot_override_correlation_id() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    request = PeerRequest(peer="user", operation="ping", method="GET", path="/", headers={"X-Correlation-ID": "spoofed"})
    result = await _propagator(handler, MetricsRegistry()).call(request, _ctx("real"))

    assert isinstance(result, PeerResponse)
    assert result.body is None
    assert seen[0].headers["X-Correlation-ID"] == "real"


async def test_timeout_is_a_typed_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    registry = MetricsRegistry()
    result = await _propagator(handler, registry).call(VALIDATE, _ctx())

    assert isinstance(result, PeerFailure)
    assert result.kind is NetworkErrorKind.TIMEOUT
    assert not result.is_client_error
    assert registry.value("order_outbound_requests_total", operation="validate_user", outcome="timeout") == 1
    assert registry.value("order_outbound_request_duration_seconds", outcome="timeout") == 1

    downstream = result.as_downstream_unavailable()
    assert downstream.kind is FailureKind.DOWNSTREAM_UNAVAILABLE
    assert status_for(downstream) == 503


async def test_connection_refused_is_a_typed_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    registry = MetricsRegistry()
    result = await _propagator(handler, registry).call(VALIDATE, _ctx())

    assert isinstance(result, PeerFailure)
    assert result.kind is NetworkErrorKind.CONNECTION
    assert registry.value("order_outbound_requests_total", outcome="connection_error") == 1


@pytest.mark.parametrize(
    ("status", "client_error", "outcome", "mapped"),
    [(404, True, "client_error", 502), (500, False, "server_error", 502)],
)
async def test_non_2xx_is_a_typed_failure(status: int, client_error: bool, outcome: str, mapped: int) -> None:
    registry = MetricsRegistry()
    result = await _propagator(lambda request: httpx.Response(status, text="nope"), registry).call(VALIDATE, _ctx())

    assert isinstance(result, PeerFailure)
    assert result.kind is NetworkErrorKind.HTTP_STATUS
    assert result.status_code == status
    assert result.body == "nope"
    assert result.is_client_error is client_error
    assert registry.value("order_outbound_requests_total", outcome=outcome) == 1

    downstream = result.as_downstream_unavailable()
    assert downstream.peer_status == status
    assert status_for(downstream) == mapped


async def test_never_retries() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503)

    await _propagator(handler, MetricsRegistry()).call(VALIDATE, _ctx())
    assert len(calls) == 1


async def test_unknown_peer_is_rejected() -> None:
    with pytest.raises(ValueError):
        await _propagator(lambda r: httpx.Response(200), MetricsRegistry()).call(
            PeerRequest(peer="billing", operation="charge", method="POST", path="/"),
            _ctx(),
        )
