from __future__ import annotations

from fastapi import Request

from meshobs.config import Settings
from meshobs.observability.health import HealthAggregator
from meshobs.observability.metrics import MetricsRegistry


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_health(request: Request) -> HealthAggregator:
    return request.app.state.health
