"""Named health checks combined into liveness and readiness verdicts.

Checks run concurrently, each bounded by its own timeout. A check that
raises or times out becomes ``Unhealthy`` for that check only; ``evaluate``
itself never raises. Results are not cached between evaluations.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

import httpx
import structlog


class HealthStatus(str, Enum):
    """Health check status, ordered from best to worst."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


@dataclass(frozen=True)
class HealthCheckResult:
    status: HealthStatus
    reason: str | None = None
    # Internal detail; logged, never rendered in responses.
    cause: str | None = None

    @classmethod
    def healthy(cls, reason: str | None = None) -> "HealthCheckResult":
        return cls(HealthStatus.HEALTHY, reason)

    @classmethod
    def degraded(cls, reason: str) -> "HealthCheckResult":
        return cls(HealthStatus.DEGRADED, reason)

    @classmethod
    def unhealthy(cls, reason: str, cause: str | None = None) -> "HealthCheckResult":
        return cls(HealthStatus.UNHEALTHY, reason, cause)


Check = Callable[[], Union[HealthCheckResult, Awaitable[HealthCheckResult]]]


@dataclass(frozen=True)
class RegisteredCheck:
    name: str
    check: Check
    tags: frozenset[str]
    timeout: float


@dataclass(frozen=True)
class CheckOutcome:
    result: HealthCheckResult
    latency_ms: float


@dataclass(frozen=True)
class HealthReport:
    overall: HealthStatus
    checks: dict[str, CheckOutcome]

    @property
    def http_status(self) -> int:
        return 503 if self.overall is HealthStatus.UNHEALTHY else 200

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        checks: dict[str, dict[str, Any]] = {}
        for name, outcome in self.checks.items():
            entry: dict[str, Any] = {
                "status": outcome.result.status.value,
                "latencyMs": round(outcome.latency_ms, 2),
            }
            if outcome.result.reason:
                entry["reason"] = outcome.result.reason
            checks[name] = entry
        body: dict[str, Any] = {"status": self.overall.value, "checks": checks}
        if self.overall is HealthStatus.DEGRADED:
            degraded = sorted(n for n, o in self.checks.items() if o.result.status is HealthStatus.DEGRADED)
            body["warning"] = "degraded checks: " + ", ".join(degraded)
        return body


class HealthAggregator:
    def __init__(self, default_timeout: float = 2.0) -> None:
        self.default_timeout = default_timeout
        self._checks: dict[str, RegisteredCheck] = {}

    def register(
        self,
        name: str,
        check: Check,
        *,
        tags: Iterable[str] = (),
        timeout: float | None = None,
    ) -> None:
        if name in self._checks:
            raise ValueError(f"health check {name!r} is already registered")
        self._checks[name] = RegisteredCheck(
            name=name,
            check=check,
            tags=frozenset(tags),
            timeout=self.default_timeout if timeout is None else timeout,
        )

    @property
    def names(self) -> list[str]:
        return list(self._checks)

    async def evaluate(self, tag: str | None = None) -> HealthReport:
        selected = [c for c in self._checks.values() if tag is None or tag in c.tags]
        outcomes = await asyncio.gather(*(self._run(c) for c in selected))
        checks = {c.name: outcome for c, outcome in zip(selected, outcomes)}
        overall = HealthStatus.HEALTHY
        for outcome in outcomes:
            if outcome.result.status.severity > overall.severity:
                overall = outcome.result.status
        return HealthReport(overall=overall, checks=checks)

    async def _run(self, registered: RegisteredCheck) -> CheckOutcome:
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(_invoke(registered.check), timeout=registered.timeout)
            if not isinstance(result, HealthCheckResult):
                result = HealthCheckResult.unhealthy("invalid result", cause=repr(result))
        except _CheckRaised as raised:
            exc = raised.error
            result = HealthCheckResult.unhealthy("check raised", cause=f"{type(exc).__name__}: {exc}")
        except asyncio.TimeoutError:
            result = HealthCheckResult.unhealthy("timeout")
        latency = (time.monotonic() - start) * 1000

        if result.status is not HealthStatus.HEALTHY:
            structlog.get_logger("meshobs.health").warning(
                "health_check_failed",
                check=registered.name,
                status=result.status.value,
                reason=result.reason,
                cause=result.cause,
            )
        return CheckOutcome(result=result, latency_ms=latency)


class _CheckRaised(Exception):
    """Carries an exception from the check itself past ``wait_for``.

    Keeps a ``TimeoutError`` raised inside a check apart from the check timing out.
    """

    def __init__(self, error: Exception) -> None:
        super().__init__(error)
        self.error = error


async def _invoke(check: Check) -> Any:
    try:
        if inspect.iscoroutinefunction(check):
            return await check()
        # Blocking checks run off the event loop so the timeout can still fire.
        result = await asyncio.to_thread(check)
        if inspect.isawaitable(result):
            result = await result
        return result
    except Exception as exc:
        raise _CheckRaised(exc) from exc


def always_healthy() -> HealthCheckResult:
    return HealthCheckResult.healthy()


def http_probe(client: httpx.AsyncClient, url: str, timeout: float = 1.0) -> Check:
    """Check that ``url`` answers 200 within ``timeout``; anything else marks the check degraded."""

    async def probe() -> HealthCheckResult:
        try:
            # wait_for also bounds transports that ignore httpx timeouts.
            response = await asyncio.wait_for(client.get(url, timeout=timeout), timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return HealthCheckResult.degraded("peer timed out")
        except httpx.HTTPError as exc:
            return HealthCheckResult.degraded(f"unreachable ({type(exc).__name__})")
        if response.status_code != 200:
            return HealthCheckResult.degraded(f"peer answered {response.status_code}")
        return HealthCheckResult.healthy()

    return probe
