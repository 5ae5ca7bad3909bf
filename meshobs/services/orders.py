from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from threading import Lock
from typing import get_args

from meshobs.config import Settings
from meshobs.models.schemas import CreateOrderRequest, Order, OrderStatus, UpdateOrderStatusRequest
from meshobs.observability.metrics import MetricsRegistry
from meshobs.observability.propagation import OutboundPropagator, PeerFailure, PeerRequest
from meshobs.pipeline import Fails, FailureKind, HandlerResult, InboundRequest, Ok, RequestContext
from meshobs.services.common import parse_body, path_int, simulate_latency


ORDER_STATUSES: frozenset[str] = frozenset(get_args(OrderStatus))

# Business metric labels must stay bounded; anything else is reported as "other".
PRODUCT_CATALOG = frozenset({"Laptop", "Mouse", "Keyboard", "Monitor", "Headphones", "Webcam"})

ORDER_VALUE_BUCKETS = (10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0)


def product_label(product: str) -> str:
    return product if product in PRODUCT_CATALOG else "other"


class OrderStore:
    """In-memory order table; every access goes through one short lock."""

    def __init__(self, orders: list[Order] | None = None) -> None:
        self._lock = Lock()
        self._orders: dict[int, Order] = {o.id: o for o in (orders or [])}

    @classmethod
    def seeded(cls) -> "OrderStore":
        now = datetime.now(timezone.utc)
        return cls(
            [
                Order(id=1, user_id=1, product="Laptop", amount=Decimal("999.99"), status="Completed", created_at=now - timedelta(days=5)),
                Order(id=2, user_id=1, product="Mouse", amount=Decimal("29.99"), status="Completed", created_at=now - timedelta(days=3)),
                Order(id=3, user_id=2, product="Keyboard", amount=Decimal("79.99"), status="Processing", created_at=now - timedelta(days=1)),
                Order(id=4, user_id=2, product="Monitor", amount=Decimal("299.99"), status="Shipped", created_at=now - timedelta(hours=12)),
            ]
        )

    def all(self) -> list[Order]:
        with self._lock:
            return list(self._orders.values())

    def get(self, order_id: int) -> Order | None:
        with self._lock:
            return self._orders.get(order_id)

    def by_user(self, user_id: int) -> list[Order]:
        with self._lock:
            return [o for o in self._orders.values() if o.user_id == user_id]

    def add(self, user_id: int, product: str, amount: Decimal) -> Order:
        with self._lock:
            order = Order(
                id=max(self._orders, default=0) + 1,
                user_id=user_id,
                product=product,
                amount=amount,
                status="Processing",
                created_at=datetime.now(timezone.utc),
            )
            self._orders[order.id] = order
            return order

    def set_status(self, order_id: int, status: str) -> tuple[Order, str] | None:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None
            updated = order.model_copy(update={"status": status})
            self._orders[order_id] = updated
            return updated, order.status


class OrderHandlers:
    def __init__(
        self,
        settings: Settings,
        propagator: OutboundPropagator,
        metrics: MetricsRegistry,
        store: OrderStore | None = None,
    ) -> None:
        self.settings = settings
        self.propagator = propagator
        self.store = store if store is not None else OrderStore.seeded()
        self.orders_created = metrics.counter("orders_created_total", "Orders created by product")
        self.order_value = metrics.histogram("order_value_dollars", "Order value in dollars", buckets=ORDER_VALUE_BUCKETS)

    async def get_orders(self, request: InboundRequest, ctx: RequestContext) -> HandlerResult:
        await simulate_latency(self.settings, 10, 100)
        orders = self.store.all()
        ctx.set_tag("order.count", len(orders))
        return Ok(orders)

    async def get_order(self, request: InboundRequest, ctx: RequestContext) -> HandlerResult:
        order_id = path_int(request, "order_id")
        if isinstance(order_id, Fails):
            return order_id
        ctx.set_tag("order.id", order_id)
        await simulate_latency(self.settings, 5, 50)

        order = self.store.get(order_id)
        if order is None:
            return Fails(FailureKind.NOT_FOUND, f"Order {order_id} not found")
        ctx.set_tag("order.status", order.status)
        return Ok(order)

    async def get_orders_by_user(self, request: InboundRequest, ctx: RequestContext) -> HandlerResult:
        user_id = path_int(request, "user_id")
        if isinstance(user_id, Fails):
            return user_id
        ctx.set_tag("user.id", user_id)
        await simulate_latency(self.settings, 10, 80)

        orders = self.store.by_user(user_id)
        ctx.set_tag("order.count", len(orders))
        return Ok(orders)

    async def create_order(self, request: InboundRequest, ctx: RequestContext) -> HandlerResult:
        payload = parse_body(request, CreateOrderRequest)
        if isinstance(payload, Fails):
            return payload
        if payload.user_id <= 0 or not payload.product.strip() or payload.amount <= 0:
            return Fails(FailureKind.VALIDATION, "Valid UserId, Product, and Amount are required")
        ctx.set_tag("user.id", payload.user_id)
        ctx.set_tag("order.product", payload.product)

        check = await self.propagator.call(
            PeerRequest(peer="user", operation="validate_user", method="GET", path=f"/api/users/{payload.user_id}"),
            ctx,
        )
        if isinstance(check, PeerFailure):
            if check.is_client_error:
                return Fails(FailureKind.VALIDATION, "User not found")
            return check.as_downstream_unavailable("User service unavailable")

        await simulate_latency(self.settings, 50, 200)
        order = self.store.add(payload.user_id, payload.product, payload.amount)
        ctx.set_tag("order.id", order.id)

        product = product_label(order.product)
        self.orders_created.add(1, {"product": product, "status": "created"})
        self.order_value.observe(float(order.amount), {"product": product})
        ctx.log.info("order_created")
        return Ok(order, status_code=201, headers={"Location": f"/api/orders/{order.id}"})

    async def update_order_status(self, request: InboundRequest, ctx: RequestContext) -> HandlerResult:
        order_id = path_int(request, "order_id")
        if isinstance(order_id, Fails):
            return order_id
        payload = parse_body(request, UpdateOrderStatusRequest)
        if isinstance(payload, Fails):
            return payload
        ctx.set_tag("order.id", order_id)
        ctx.set_tag("order.new_status", payload.status)

        if payload.status not in ORDER_STATUSES:
            return Fails(FailureKind.VALIDATION, "Status must be one of: " + ", ".join(sorted(ORDER_STATUSES)))

        await simulate_latency(self.settings, 20, 100)
        updated = self.store.set_status(order_id, payload.status)
        if updated is None:
            return Fails(FailureKind.NOT_FOUND, f"Order {order_id} not found")
        order, old_status = updated
        ctx.log.info("order_status_updated", old_status=old_status, new_status=order.status)
        return Ok(order)
