from __future__ import annotations

import asyncio
import json
import random
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from meshobs.config import Settings
from meshobs.pipeline import Fails, FailureKind, InboundRequest


M = TypeVar("M", bound=BaseModel)


def path_int(request: InboundRequest, name: str) -> int | Fails:
    raw = request.path_params.get(name)
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return Fails(FailureKind.VALIDATION, f"{name} must be an integer")


def parse_body(request: InboundRequest, model: type[M]) -> M | Fails:
    if not request.body:
        return Fails(FailureKind.VALIDATION, "Request body is required")
    try:
        payload = json.loads(request.body)
    except ValueError:
        return Fails(FailureKind.VALIDATION, "Request body must be valid JSON")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) or "body" for err in exc.errors()})
        return Fails(FailureKind.VALIDATION, "Invalid fields: " + ", ".join(fields))


async def simulate_latency(settings: Settings, low_ms: int, high_ms: int) -> None:
    """Sleep like the downstream work the sample services pretend to do."""

    if settings.simulate_latency:
        await asyncio.sleep(random.randint(low_ms, high_ms) / 1000.0)
