from __future__ import annotations

import random

from meshobs.config import Settings
from meshobs.models.schemas import CreateUserRequest, User
from meshobs.observability.propagation import OutboundPropagator, PeerFailure, PeerRequest
from meshobs.pipeline import Fails, FailureKind, HandlerResult, InboundRequest, Ok, RequestContext
from meshobs.services.common import parse_body, path_int, simulate_latency


# Ids above this are treated as nonexistent.
MAX_KNOWN_USER_ID = 1000

_SEEDED_USERS = (
    User(id=1, name="John Doe", email="john@example.com", department="Engineering"),
    User(id=2, name="Jane Smith", email="jane@example.com", department="Marketing"),
)


class UserHandlers:
    def __init__(self, settings: Settings, propagator: OutboundPropagator) -> None:
        self.settings = settings
        self.propagator = propagator

    async def get_users(self, request: InboundRequest, ctx: RequestContext) -> HandlerResult:
        ctx.set_tag("user.count", len(_SEEDED_USERS))
        await simulate_latency(self.settings, 10, 100)
        return Ok(list(_SEEDED_USERS))

    async def get_user(self, request: InboundRequest, ctx: RequestContext) -> HandlerResult:
        user_id = path_int(request, "user_id")
        if isinstance(user_id, Fails):
            return user_id
        ctx.set_tag("user.id", user_id)
        await simulate_latency(self.settings, 5, 50)

        if user_id <= 0:
            return Fails(FailureKind.VALIDATION, "Invalid user ID")
        if user_id > MAX_KNOWN_USER_ID:
            return Fails(FailureKind.NOT_FOUND, f"User {user_id} not found")

        for user in _SEEDED_USERS:
            if user.id == user_id:
                return Ok(user)
        return Ok(User(id=user_id, name=f"User {user_id}", email=f"user{user_id}@example.com", department="Engineering"))

    async def create_user(self, request: InboundRequest, ctx: RequestContext) -> HandlerResult:
        payload = parse_body(request, CreateUserRequest)
        if isinstance(payload, Fails):
            return payload
        if not payload.name.strip() or not payload.email.strip():
            return Fails(FailureKind.VALIDATION, "Name and Email are required")

        await simulate_latency(self.settings, 20, 100)
        user = User(
            id=random.randint(MAX_KNOWN_USER_ID, 9999),
            name=payload.name,
            email=payload.email,
            department=payload.department or "General",
        )
        ctx.set_tag("user.id", user.id)
        ctx.log.info("user_created")
        return Ok(user, status_code=201, headers={"Location": f"/api/users/{user.id}"})

    async def get_user_orders(self, request: InboundRequest, ctx: RequestContext) -> HandlerResult:
        user_id = path_int(request, "user_id")
        if isinstance(user_id, Fails):
            return user_id
        ctx.set_tag("user.id", user_id)

        result = await self.propagator.call(
            PeerRequest(peer="order", operation="fetch_user_orders", method="GET", path=f"/api/orders/user/{user_id}"),
            ctx,
        )
        if isinstance(result, PeerFailure):
            if result.status_code == 404:
                return Fails(FailureKind.NOT_FOUND, f"No orders found for user {user_id}")
            return result.as_downstream_unavailable("Failed to fetch orders")
        return Ok(result.body)
