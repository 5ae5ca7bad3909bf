from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.responses import Response

from meshobs.api.deps import get_app_settings, get_registry
from meshobs.config import Settings
from meshobs.observability.metrics import MetricsRegistry


router = APIRouter(tags=["metrics"])


def _require_enabled(settings: Settings = Depends(get_app_settings)) -> None:
    if not settings.enable_metrics_endpoint:
        raise HTTPException(status_code=404, detail="Not found")


@router.get("/metrics", response_class=Response, dependencies=[Depends(_require_enabled)])
async def prometheus_metrics(registry: MetricsRegistry = Depends(get_registry)) -> Response:
    return Response(content=registry.generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/api/metrics", dependencies=[Depends(_require_enabled)])
async def metrics_snapshot(registry: MetricsRegistry = Depends(get_registry)) -> dict:
    return registry.snapshot()
