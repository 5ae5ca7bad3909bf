"""The five request stages, outermost first.

Every stage has the shape ``stage(ctx, request, call_next)`` and keeps its
"after" work in a ``finally`` block, so it runs on normal return, on a
failure, and on cancellation alike.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from time import perf_counter
from typing import Protocol

from meshobs.observability.correlation import DEFAULT_HEADER, acquire, new_correlation_id
from meshobs.observability.metrics import Counter, Histogram, MetricsRegistry, UpDownCounter
from meshobs.pipeline.context import InboundRequest, PipelineResponse, RequestContext
from meshobs.pipeline.results import (
    Fails,
    FailureKind,
    HandlerResult,
    Ok,
    UnexpectedFailure,
    error_envelope,
    failure_body,
    outcome_for_status,
    status_for,
)


# Status recorded when the client goes away before a response exists.
CLIENT_CLOSED_REQUEST = 499

GENERIC_ERROR_MESSAGE = "An unexpected error occurred"

Next = Callable[[RequestContext, InboundRequest], Awaitable[PipelineResponse]]
Handler = Callable[[InboundRequest, RequestContext], Awaitable[HandlerResult]]


class Stage(Protocol):
    async def __call__(self, ctx: RequestContext, request: InboundRequest, call_next: Next) -> PipelineResponse: ...


@dataclass(frozen=True)
class RequestInstruments:
    requests: Counter
    duration: Histogram
    in_flight: UpDownCounter
    errors: Counter

    @classmethod
    def create(cls, metrics: MetricsRegistry, service: str) -> "RequestInstruments":
        return cls(
            requests=metrics.counter(f"{service}_requests_total", f"Total requests handled by the {service} service"),
            duration=metrics.histogram(f"{service}_request_duration_seconds", "Inbound request duration in seconds"),
            in_flight=metrics.gauge(f"{service}_requests_in_flight", "Requests currently being handled"),
            errors=metrics.counter(f"{service}_errors_total", "Failed requests by failure kind"),
        )


class CorrelationStage:
    def __init__(self, header_name: str = DEFAULT_HEADER) -> None:
        self.header_name = header_name

    async def __call__(self, ctx: RequestContext, request: InboundRequest, call_next: Next) -> PipelineResponse:
        try:
            ctx.bind_correlation_id(acquire(request.headers, self.header_name))
        except Exception:
            if not ctx.has_correlation_id:
                ctx.bind_correlation_id(new_correlation_id())
            ctx.log.warning("correlation_fallback", exc_info=True)

        response: PipelineResponse | None = None
        try:
            response = await call_next(ctx, request)
            return response
        finally:
            if response is not None:
                response.headers[self.header_name] = ctx.correlation_id


class LoggingStage:
    async def __call__(self, ctx: RequestContext, request: InboundRequest, call_next: Next) -> PipelineResponse:
        ctx.log.info("request_started")
        status_code = 500
        try:
            response = await call_next(ctx, request)
            status_code = response.status_code
            return response
        except asyncio.CancelledError:
            status_code = CLIENT_CLOSED_REQUEST
            raise
        finally:
            ctx.log.info(
                "request_completed",
                status_code=status_code,
                elapsed_ms=round(ctx.elapsed_seconds() * 1000.0, 2),
                cancelled=status_code == CLIENT_CLOSED_REQUEST,
            )


class MetricsStage:
    def __init__(self, instruments: RequestInstruments) -> None:
        self.instruments = instruments

    async def __call__(self, ctx: RequestContext, request: InboundRequest, call_next: Next) -> PipelineResponse:
        endpoint = {"endpoint": ctx.operation}
        self.instruments.in_flight.add(1, endpoint)
        start = perf_counter()
        status_code = 500
        try:
            response = await call_next(ctx, request)
            status_code = response.status_code
            return response
        except asyncio.CancelledError:
            status_code = CLIENT_CLOSED_REQUEST
            raise
        finally:
            elapsed = perf_counter() - start
            # Decrement first: nothing below may leave the gauge raised.
            self.instruments.in_flight.add(-1, endpoint)
            outcome = outcome_for_status(status_code).value
            self.instruments.requests.add(1, {**endpoint, "method": ctx.method, "outcome": outcome})
            self.instruments.duration.observe(elapsed, {**endpoint, "outcome": outcome})


class ErrorHandlingStage:
    """Last line of defence: turns any exception into an ``ErrorEnvelope``.

    Domain failures (already shaped by ``dispatch``) are counted and logged
    here too. Cancellation is not an error and is left to propagate.
    """

    def __init__(self, instruments: RequestInstruments) -> None:
        self.instruments = instruments

    async def __call__(self, ctx: RequestContext, request: InboundRequest, call_next: Next) -> PipelineResponse:
        try:
            response = await call_next(ctx, request)
        except Exception as exc:
            kind = FailureKind.UNEXPECTED
            message = exc.detail if isinstance(exc, UnexpectedFailure) else GENERIC_ERROR_MESSAGE
            self.instruments.errors.add(1, {"kind": kind.value})
            ctx.log.error(
                "request_crashed",
                kind=kind.value,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=exc,
            )
            envelope = error_envelope(kind, message, ctx.correlation_id)
            return PipelineResponse(status_code=500, body=envelope.model_dump(mode="json"))

        if ctx.failure_kind is not None:
            self.instruments.errors.add(1, {"kind": ctx.failure_kind})
            ctx.log.warning(
                "request_failed",
                kind=ctx.failure_kind,
                detail=ctx.failure_detail,
                status_code=response.status_code,
            )
        return response


async def dispatch(handler: Handler, ctx: RequestContext, request: InboundRequest) -> PipelineResponse:
    """Innermost stage: invoke the business handler and shape its result."""

    result = await handler(request, ctx)
    if isinstance(result, Ok):
        return PipelineResponse(status_code=result.status_code, body=result.body, headers=dict(result.headers or {}))
    if isinstance(result, Fails):
        if result.kind is FailureKind.UNEXPECTED:
            raise UnexpectedFailure(result.detail)
        ctx.failure_kind = result.kind.value
        ctx.failure_detail = result.detail
        return PipelineResponse(status_code=status_for(result), body=failure_body(result, ctx.correlation_id))
    raise TypeError(f"handler returned {type(result).__name__}, expected Ok or Fails")
