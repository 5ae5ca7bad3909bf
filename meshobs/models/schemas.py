from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ErrorEnvelope(BaseModel):
    """The only body ever returned for an unexpected failure."""

    error: str
    correlationId: str
    timestamp: datetime


class User(BaseModel):
    id: int
    name: str
    email: str
    department: str


class CreateUserRequest(BaseModel):
    name: str = ""
    email: str = ""
    department: str | None = None


OrderStatus = Literal["Pending", "Processing", "Shipped", "Completed", "Cancelled"]


class Order(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    user_id: int = Field(alias="userId")
    product: str
    amount: Decimal
    status: str
    created_at: datetime = Field(alias="createdAt")


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(default=0, alias="userId")
    product: str = ""
    amount: Decimal = Decimal("0")


class UpdateOrderStatusRequest(BaseModel):
    status: str = ""


class CheckDetail(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    reason: str | None = None
    latencyMs: float


class HealthReportResponse(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    checks: dict[str, CheckDetail]
    warning: str | None = None
