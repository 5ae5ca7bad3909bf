from __future__ import annotations

from fastapi import APIRouter

from meshobs.pipeline import Pipeline
from meshobs.services.orders import OrderHandlers


def build_router(pipeline: Pipeline, handlers: OrderHandlers) -> APIRouter:
    router = APIRouter(prefix="/api/orders", tags=["orders"])
    routes = (
        ("", "GET", "get_orders", handlers.get_orders),
        ("/user/{user_id}", "GET", "get_orders_by_user", handlers.get_orders_by_user),
        ("/{order_id}", "GET", "get_order", handlers.get_order),
        ("", "POST", "create_order", handlers.create_order),
        ("/{order_id}/status", "PUT", "update_order_status", handlers.update_order_status),
    )
    for path, method, operation, handler in routes:
        router.add_api_route(path, pipeline.endpoint(operation, handler), methods=[method], response_model=None)
    return router
