from __future__ import annotations

from fastapi import APIRouter

from meshobs.pipeline import Pipeline
from meshobs.services.diagnostics import simulate_delay, simulate_error


def build_router(pipeline: Pipeline) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["diagnostics"])
    router.add_api_route("/simulate-error", pipeline.endpoint("simulate_error", simulate_error), methods=["GET"], response_model=None)
    router.add_api_route("/simulate-delay", pipeline.endpoint("simulate_delay", simulate_delay), methods=["GET"], response_model=None)
    return router
