"""Health endpoints.

- /health       - ping, no checks (what peer services probe)
- /health/live  - liveness: every registered check
- /health/ready - readiness: only checks tagged "ready"

Healthy and degraded answer 200 (degraded adds a warning); unhealthy answers 503.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from meshobs.api.deps import get_health
from meshobs.models.schemas import HealthReportResponse
from meshobs.observability.health import HealthAggregator

router = APIRouter(tags=["health"])


async def _report(health: HealthAggregator, tag: str | None) -> JSONResponse:
    report = await health.evaluate(tag)
    body = HealthReportResponse.model_validate(report.to_dict())
    return JSONResponse(content=body.model_dump(exclude_none=True), status_code=report.http_status)


@router.get("/health")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/live", response_model=HealthReportResponse)
async def liveness(health: HealthAggregator = Depends(get_health)) -> JSONResponse:
    return await _report(health, None)


@router.get("/health/ready", response_model=HealthReportResponse)
async def readiness(health: HealthAggregator = Depends(get_health)) -> JSONResponse:
    return await _report(health, "ready")
