from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


ServiceName = Literal["user", "order"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    service_name: ServiceName = Field(default="user", alias="SERVICE_NAME")
    correlation_header: str = Field(default="X-Correlation-ID", alias="CORRELATION_HEADER")

    user_service_url: str = Field(default="http://user-service", alias="USER_SERVICE_URL")
    order_service_url: str = Field(default="http://order-service", alias="ORDER_SERVICE_URL")
    outbound_timeout_seconds: float = Field(default=5.0, alias="OUTBOUND_TIMEOUT_SECONDS")

    health_check_timeout_seconds: float = Field(default=2.0, alias="HEALTH_CHECK_TIMEOUT_SECONDS")

    metrics_max_label_sets: int = Field(default=200, alias="METRICS_MAX_LABEL_SETS")
    metrics_max_label_value_length: int = Field(default=64, alias="METRICS_MAX_LABEL_VALUE_LENGTH")
    enable_metrics_endpoint: bool = Field(default=True, alias="ENABLE_METRICS_ENDPOINT")

    # Off by default so local runs and tests stay deterministic.
    simulate_latency: bool = Field(default=False, alias="SIMULATE_LATENCY")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    def peer_url(self, peer: ServiceName) -> str:
        url = self.user_service_url if peer == "user" else self.order_service_url
        return url.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
