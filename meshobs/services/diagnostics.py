from __future__ import annotations

import asyncio
import random

from meshobs.pipeline import Fails, FailureKind, HandlerResult, InboundRequest, Ok, RequestContext


MAX_DELAY_MS = 10_000


async def simulate_error(request: InboundRequest, ctx: RequestContext) -> HandlerResult:
    raise RuntimeError("Simulated error for testing purposes")


async def simulate_delay(request: InboundRequest, ctx: RequestContext) -> HandlerResult:
    raw = request.query_params.get("ms")
    if raw is None:
        delay_ms = random.randint(100, 2000)
    else:
        try:
            delay_ms = int(raw)
        except ValueError:
            return Fails(FailureKind.VALIDATION, "ms must be an integer")
        if not 0 <= delay_ms <= MAX_DELAY_MS:
            return Fails(FailureKind.VALIDATION, f"ms must be between 0 and {MAX_DELAY_MS}")

    ctx.set_tag("delay_ms", delay_ms)
    await asyncio.sleep(delay_ms / 1000.0)
    return Ok({"message": "Delayed response", "delayMs": delay_ms})
