"""Outbound calls to peer services, carrying the caller's correlation id.

The propagator never retries. Transport problems and non-2xx answers come
back as a ``PeerFailure`` value so the calling handler decides what they mean
for its own response.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any, Union

import httpx

from meshobs.observability.correlation import DEFAULT_HEADER
from meshobs.observability.metrics import MetricsRegistry
from meshobs.pipeline.context import RequestContext
from meshobs.pipeline.results import Fails, FailureKind


class NetworkErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection_error"
    HTTP_STATUS = "http_status"


@dataclass(frozen=True)
class PeerRequest:
    peer: str
    operation: str
    method: str
    path: str
    json: Any = None
    params: Mapping[str, Any] | None = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PeerResponse:
    status_code: int
    headers: Mapping[str, str]
    body: Any


@dataclass(frozen=True)
class PeerFailure:
    kind: NetworkErrorKind
    peer: str
    detail: str
    status_code: int | None = None
    body: Any = None

    @property
    def is_client_error(self) -> bool:
        return self.kind is NetworkErrorKind.HTTP_STATUS and self.status_code is not None and self.status_code < 500

    def as_downstream_unavailable(self, detail: str | None = None) -> Fails:
        return Fails(
            kind=FailureKind.DOWNSTREAM_UNAVAILABLE,
            detail=detail or f"{self.peer} service unavailable",
            peer=self.peer,
            peer_status=self.status_code,
            peer_unreachable=self.kind is not NetworkErrorKind.HTTP_STATUS,
        )


PeerResult = Union[PeerResponse, PeerFailure]


def _outcome(status_code: int) -> str:
    if status_code >= 500:
        return "server_error"
    if status_code >= 400:
        return "client_error"
    return "success"


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class OutboundPropagator:
    def __init__(
        self,
        client: httpx.AsyncClient,
        metrics: MetricsRegistry,
        *,
        service: str,
        peers: Mapping[str, str],
        header_name: str = DEFAULT_HEADER,
    ) -> None:
        self._client = client
        self._peers = {name: url.rstrip("/") for name, url in peers.items()}
        self.service = service
        self.header_name = header_name
        self._requests = metrics.counter(
            f"{service}_outbound_requests_total", "Outbound calls to peer services by outcome"
        )
        self._duration = metrics.histogram(
            f"{service}_outbound_request_duration_seconds", "Outbound call duration in seconds"
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    def peer_url(self, peer: str) -> str:
        try:
            return self._peers[peer]
        except KeyError:
            raise ValueError(f"unknown peer service: {peer!r}") from None

    async def call(self, peer_request: PeerRequest, ctx: RequestContext) -> PeerResult:
        url = self.peer_url(peer_request.peer) + peer_request.path
        headers = {**peer_request.headers, self.header_name: ctx.correlation_id}
        log = ctx.log.bind(peer=peer_request.peer, outbound_operation=peer_request.operation)

        outcome = "error"
        start = perf_counter()
        try:
            response = await self._client.request(
                peer_request.method,
                url,
                headers=headers,
                json=peer_request.json,
                params=peer_request.params,
            )
        except httpx.TimeoutException as exc:
            outcome = NetworkErrorKind.TIMEOUT.value
            log.warning("outbound_call_failed", outcome=outcome, error=str(exc) or type(exc).__name__)
            return PeerFailure(kind=NetworkErrorKind.TIMEOUT, peer=peer_request.peer, detail="request timed out")
        except httpx.TransportError as exc:
            outcome = NetworkErrorKind.CONNECTION.value
            log.warning("outbound_call_failed", outcome=outcome, error=str(exc) or type(exc).__name__)
            return PeerFailure(kind=NetworkErrorKind.CONNECTION, peer=peer_request.peer, detail="connection failed")
        else:
            outcome = _outcome(response.status_code)
            body = _parse_body(response)
            log.info("outbound_call", outcome=outcome, status_code=response.status_code)
            if response.is_success:
                return PeerResponse(status_code=response.status_code, headers=response.headers, body=body)
            return PeerFailure(
                kind=NetworkErrorKind.HTTP_STATUS,
                peer=peer_request.peer,
                detail=f"peer answered {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        finally:
            labels = {"peer": peer_request.peer, "operation": peer_request.operation, "outcome": outcome}
            self._requests.add(1, labels)
            self._duration.observe(perf_counter() - start, labels)

    async def aclose(self) -> None:
        await self._client.aclose()
