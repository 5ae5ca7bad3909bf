from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

from meshobs.observability.correlation import CorrelationId
from meshobs.observability.logging import get_logger


@dataclass(frozen=True)
class InboundRequest:
    """Framework-neutral view of an inbound HTTP request."""

    method: str
    path: str
    headers: Mapping[str, str]
    path_params: Mapping[str, Any] = field(default_factory=dict)
    query_params: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class PipelineResponse:
    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


class RequestContext:
    """Per-request state threaded explicitly through stages, handlers and the propagator.

    The correlation id can be bound exactly once; everything that needs it
    receives the context as an argument instead of reading ambient state.
    """

    def __init__(self, *, service: str, operation: str, method: str, path: str) -> None:
        self.service = service
        self.operation = operation
        self.method = method
        self.path = path
        self.started_at = datetime.now(timezone.utc)
        self.started = perf_counter()
        self.tags: dict[str, str] = {}
        self.failure_kind: str | None = None
        self.failure_detail: str | None = None
        self._correlation_id: CorrelationId | None = None
        self._log: Any = None

    @property
    def correlation_id(self) -> CorrelationId:
        if self._correlation_id is None:
            raise RuntimeError("correlation id has not been bound yet")
        return self._correlation_id

    @property
    def has_correlation_id(self) -> bool:
        return self._correlation_id is not None

    def bind_correlation_id(self, correlation_id: CorrelationId) -> None:
        if self._correlation_id is not None:
            raise RuntimeError("correlation id is already bound")
        if not correlation_id:
            raise ValueError("correlation id must be non-empty")
        self._correlation_id = correlation_id
        self._log = None

    def set_tag(self, key: str, value: Any) -> None:
        self.tags[key] = str(value)

    def elapsed_seconds(self) -> float:
        return perf_counter() - self.started

    @property
    def log(self) -> Any:
        """Logger bound to this request's identity and current tags."""

        if self._log is None:
            self._log = get_logger(
                "meshobs.request",
                service=self.service,
                operation=self.operation,
                method=self.method,
                path=self.path,
                correlation_id=self._correlation_id,
            )
        return self._log.bind(**self.tags) if self.tags else self._log
