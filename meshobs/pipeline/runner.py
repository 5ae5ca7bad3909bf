from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from functools import partial

from fastapi.encoders import jsonable_encoder
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from meshobs.observability.correlation import DEFAULT_HEADER
from meshobs.observability.metrics import MetricsRegistry
from meshobs.pipeline.context import InboundRequest, PipelineResponse, RequestContext
from meshobs.pipeline.stages import (
    CorrelationStage,
    ErrorHandlingStage,
    Handler,
    LoggingStage,
    MetricsStage,
    Next,
    RequestInstruments,
    Stage,
    dispatch,
)


def _link(stage: Stage, call_next: Next) -> Next:
    async def run(ctx: RequestContext, request: InboundRequest) -> PipelineResponse:
        return await stage(ctx, request, call_next)

    return run


class Pipeline:
    """Runs every inbound request through a fixed, strictly nested stage list."""

    def __init__(
        self,
        service: str,
        metrics: MetricsRegistry,
        correlation_header: str = DEFAULT_HEADER,
        stages: Sequence[Stage] | None = None,
    ) -> None:
        self.service = service
        self.metrics = metrics
        self.correlation_header = correlation_header
        self.instruments = RequestInstruments.create(metrics, service)
        if stages is None:
            stages = (
                CorrelationStage(correlation_header),
                LoggingStage(),
                MetricsStage(self.instruments),
                ErrorHandlingStage(self.instruments),
            )
        self.stages = tuple(stages)

    async def run(self, request: InboundRequest, operation: str, handler: Handler) -> PipelineResponse:
        ctx = RequestContext(service=self.service, operation=operation, method=request.method, path=request.path)
        call: Next = partial(dispatch, handler)
        for stage in reversed(self.stages):
            call = _link(stage, call)
        return await call(ctx, request)

    def endpoint(self, operation: str, handler: Handler) -> Callable[[Request], Awaitable[Response]]:
        """Adapt ``handler`` into a Starlette/FastAPI endpoint running this pipeline."""

        async def endpoint(request: Request) -> Response:
            inbound = InboundRequest(
                method=request.method,
                path=request.url.path,
                headers=request.headers,
                path_params=dict(request.path_params),
                query_params=dict(request.query_params),
                body=await request.body(),
            )
            result = await self.run(inbound, operation, handler)
            return to_response(result)

        endpoint.__name__ = operation
        return endpoint


def to_response(result: PipelineResponse) -> Response:
    if result.status_code == 204 or result.body is None:
        return Response(status_code=result.status_code, headers=result.headers)
    return JSONResponse(content=jsonable_encoder(result.body), status_code=result.status_code, headers=result.headers)
