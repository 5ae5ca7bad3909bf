from __future__ import annotations

from fastapi import APIRouter

from meshobs.pipeline import Pipeline
from meshobs.services.users import UserHandlers


def build_router(pipeline: Pipeline, handlers: UserHandlers) -> APIRouter:
    router = APIRouter(prefix="/api/users", tags=["users"])
    routes = (
        ("", "GET", "get_users", handlers.get_users),
        ("/{user_id}", "GET", "get_user", handlers.get_user),
        ("", "POST", "create_user", handlers.create_user),
        ("/{user_id}/orders", "GET", "get_user_orders", handlers.get_user_orders),
    )
    for path, method, operation, handler in routes:
        router.add_api_route(path, pipeline.endpoint(operation, handler), methods=[method], response_model=None)
    return router
