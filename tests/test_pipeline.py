from __future__ import annotations

import asyncio
from datetime import datetime

import pytest
from structlog.testing import capture_logs

from meshobs.observability.metrics import MetricsRegistry
from meshobs.pipeline import Fails, FailureKind, InboundRequest, Ok, Pipeline, RequestContext


HEADER = "X-Correlation-ID"


def _request(headers: dict[str, str] | None = None) -> InboundRequest:
    return InboundRequest(method="GET", path="/api/things/1", headers=headers or {})


async def _ok(request: InboundRequest, ctx: RequestContext) -> Ok:
    return Ok({"correlation": ctx.correlation_id})


async def _not_found(request: InboundRequest, ctx: RequestContext) -> Fails:
    return Fails(FailureKind.NOT_FOUND, "Thing 1 not found")


async def _boom(request: InboundRequest, ctx: RequestContext) -> Ok:
    raise KeyError("secret-internal-key")


@pytest.fixture
def registry() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def pipeline(registry: MetricsRegistry) -> Pipeline:
    return Pipeline("thing", registry, correlation_header=HEADER)


async def test_handler_sees_correlation_id_that_is_returned_in_header(pipeline: Pipeline) -> None:
    response = await pipeline.run(_request(), "get_thing", _ok)

    assert response.status_code == 200
    assert response.headers[HEADER]
    assert response.body == {"correlation": response.headers[HEADER]}


async def test_inbound_correlation_id_is_reused_verbatim(pipeline: Pipeline) -> None:
    response = await pipeline.run(_request({HEADER: "upstream-abc-123"}), "get_thing", _ok)
    assert response.headers[HEADER] == "upstream-abc-123"


async def test_each_request_gets_a_distinct_generated_id(pipeline: Pipeline) -> None:
    first = await pipeline.run(_request(), "get_thing", _ok)
    second = await pipeline.run(_request(), "get_thing", _ok)
    assert first.headers[HEADER] != second.headers[HEADER]


async def test_success_records_counter_and_duration(pipeline: Pipeline, registry: MetricsRegistry) -> None:
    await pipeline.run(_request(), "get_thing", _ok)

    assert registry.value("thing_requests_total", endpoint="get_thing", method="GET", outcome="success") == 1
    assert registry.value("thing_request_duration_seconds", endpoint="get_thing", outcome="success") == 1
    assert registry.value("thing_requests_in_flight", endpoint="get_thing") == 0
    assert registry.value("thing_errors_total") == 0


async def test_domain_failure_is_structured_and_counted(pipeline: Pipeline, registry: MetricsRegistry) -> None:
    with capture_logs() as logs:
        response = await pipeline.run(_request(), "get_thing", _not_found)

    assert response.status_code == 404
    assert response.body["kind"] == "not_found"
    assert response.body["detail"] == "Thing 1 not found"
    assert response.body["correlationId"] == response.headers[HEADER]
    assert "error" not in response.body

    assert registry.value("thing_errors_total", kind="not_found") == 1
    assert registry.value("thing_requests_total", outcome="client_error") == 1
    assert any(e["event"] == "request_failed" and e["log_level"] == "warning" for e in logs)


async def test_unexpected_exception_becomes_envelope(pipeline: Pipeline, registry: MetricsRegistry) -> None:
    with capture_logs() as logs:
        response = await pipeline.run(_request({HEADER: "cid-500"}), "get_thing", _boom)

    assert response.status_code == 500
    assert set(response.body) == {"error", "correlationId", "timestamp"}
    assert response.body["correlationId"] == "cid-500"
    assert response.headers[HEADER] == "cid-500"
    assert "secret-internal-key" not in response.body["error"]
    assert "KeyError" not in response.body["error"]
    assert response.body["error"].startswith("unexpected:")
    assert datetime.fromisoformat(response.body["timestamp"].replace("Z", "+00:00")).tzinfo is not None

    assert registry.value("thing_errors_total", kind="unexpected") == 1
    assert registry.value("thing_requests_total", outcome="server_error") == 1

    crashed = [e for e in logs if e["event"] == "request_crashed"]
    assert len(crashed) == 1
    assert crashed[0]["correlation_id"] == "cid-500"
    assert crashed[0]["error_type"] == "KeyError"
    assert isinstance(crashed[0]["exc_info"], KeyError)


async def test_unexpected_result_kind_is_wrapped_in_envelope(pipeline: Pipeline, registry: MetricsRegistry) -> None:
    async def handler(request: InboundRequest, ctx: RequestContext) -> Fails:
        return Fails(FailureKind.UNEXPECTED, "inventory is inconsistent")

    response = await pipeline.run(_request(), "get_thing", handler)

    assert response.status_code == 500
    assert response.body["error"] == "unexpected: inventory is inconsistent"
    assert registry.value("thing_errors_total", kind="unexpected") == 1


async def test_handler_returning_wrong_type_is_treated_as_unexpected(pipeline: Pipeline) -> None:
    async def handler(request: InboundRequest, ctx: RequestContext) -> dict:
        return {"not": "a result"}

    response = await pipeline.run(_request(), "get_thing", handler)  # type: ignore[arg-type]
    assert response.status_code == 500
    assert set(response.body) == {"error", "correlationId", "timestamp"}


async def test_correlation_failure_falls_back_to_generated_id(pipeline: Pipeline) -> None:
    class ExplodingHeaders(dict):
        def get(self, key, default=None):  # noqa: ANN001
            raise RuntimeError("header parsing failed")

    request = InboundRequest(method="GET", path="/x", headers=ExplodingHeaders())
    with capture_logs() as logs:
        response = await pipeline.run(request, "get_thing", _ok)

    assert response.status_code == 200
    assert response.headers[HEADER]
    assert any(e["event"] == "correlation_fallback" for e in logs)


async def test_stage_logs_are_ordered_and_correlated(pipeline: Pipeline) -> None:
    with capture_logs() as logs:
        response = await pipeline.run(_request(), "get_thing", _ok)

    events = [e["event"] for e in logs]
    assert events == ["request_started", "request_completed"]
    assert all(e["correlation_id"] == response.headers[HEADER] for e in logs)
    assert logs[0]["method"] == "GET"
    assert logs[0]["path"] == "/api/things/1"
    assert logs[1]["status_code"] == 200
    assert logs[1]["elapsed_ms"] >= 0


async def test_handler_tags_enrich_completion_record(pipeline: Pipeline) -> None:
    async def handler(request: InboundRequest, ctx: RequestContext) -> Ok:
        ctx.set_tag("order.id", 42)
        return Ok({})

    with capture_logs() as logs:
        await pipeline.run(_request(), "get_thing", handler)

    completed = [e for e in logs if e["event"] == "request_completed"][0]
    assert completed["order.id"] == "42"


@pytest.mark.parametrize("handler", [_ok, _not_found, _boom])
async def test_in_flight_gauge_never_leaks(pipeline: Pipeline, registry: MetricsRegistry, handler) -> None:  # noqa: ANN001
    await asyncio.gather(*(pipeline.run(_request(), "get_thing", handler) for _ in range(10)))
    assert registry.value("thing_requests_in_flight", endpoint="get_thing") == 0
    assert registry.value("thing_requests_total", endpoint="get_thing") == 10


async def test_cancelled_request_still_records_and_logs(pipeline: Pipeline, registry: MetricsRegistry) -> None:
    entered = asyncio.Event()

    async def hang(request: InboundRequest, ctx: RequestContext) -> Ok:
        entered.set()
        await asyncio.Event().wait()
        return Ok()

    with capture_logs() as logs:
        task = asyncio.create_task(pipeline.run(_request(), "get_thing", hang))
        await entered.wait()
        assert registry.value("thing_requests_in_flight", endpoint="get_thing") == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert registry.value("thing_requests_in_flight", endpoint="get_thing") == 0
    assert registry.value("thing_requests_total", endpoint="get_thing", outcome="client_error") == 1
    assert registry.value("thing_request_duration_seconds", endpoint="get_thing") == 1
    completed = [e for e in logs if e["event"] == "request_completed"]
    assert len(completed) == 1
    assert completed[0]["cancelled"] is True
    assert completed[0]["status_code"] == 499


async def test_concurrent_requests_keep_their_own_identity(pipeline: Pipeline) -> None:
    async def slow(request: InboundRequest, ctx: RequestContext) -> Ok:
        await asyncio.sleep(0.01)
        return Ok({"correlation": ctx.correlation_id})

    ids = [f"cid-{i}" for i in range(20)]
    responses = await asyncio.gather(*(pipeline.run(_request({HEADER: cid}), "get_thing", slow) for cid in ids))

    for cid, response in zip(ids, responses):
        assert response.headers[HEADER] == cid
        assert response.body == {"correlation": cid}


def test_correlation_id_binds_only_once() -> None:
    ctx = RequestContext(service="thing", operation="op", method="GET", path="/")
    with pytest.raises(RuntimeError):
        _ = ctx.correlation_id
    ctx.bind_correlation_id("abc")  # type: ignore[arg-type]
    with pytest.raises(RuntimeError):
        ctx.bind_correlation_id("def")  # type: ignore[arg-type]
    assert ctx.correlation_id == "abc"
