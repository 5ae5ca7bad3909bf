"""Handler results and the failure taxonomy.

Handlers return ``Ok`` or ``Fails`` instead of raising for expected failures,
so the pipeline can classify outcomes by matching on ``FailureKind``.
Exceptions are left for the genuinely unexpected.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from meshobs.models.schemas import ErrorEnvelope


class FailureKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    DOWNSTREAM_UNAVAILABLE = "downstream_unavailable"
    UNEXPECTED = "unexpected"


class OutcomeClass(str, Enum):
    SUCCESS = "success"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"


@dataclass(frozen=True)
class Ok:
    body: Any = None
    status_code: int = 200
    headers: Mapping[str, str] | None = None


@dataclass(frozen=True)
class Fails:
    kind: FailureKind
    detail: str
    peer: str | None = None
    peer_status: int | None = None
    # Peer never answered (timeout / connection error) rather than answering badly.
    peer_unreachable: bool = False


HandlerResult = Union[Ok, Fails]


class UnexpectedFailure(Exception):
    """Raised for ``Fails(UNEXPECTED)`` so the catch-all stage wraps it like any crash."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


def status_for(failure: Fails) -> int:
    if failure.kind is FailureKind.VALIDATION:
        return 400
    if failure.kind is FailureKind.NOT_FOUND:
        return 404
    if failure.kind is FailureKind.DOWNSTREAM_UNAVAILABLE:
        return 503 if failure.peer_unreachable else 502
    return 500


def outcome_for_status(status_code: int) -> OutcomeClass:
    if status_code >= 500:
        return OutcomeClass.SERVER_ERROR
    if status_code >= 400:
        return OutcomeClass.CLIENT_ERROR
    return OutcomeClass.SUCCESS


def failure_body(failure: Fails, correlation_id: str) -> dict[str, Any]:
    body: dict[str, Any] = {
        "detail": failure.detail,
        "kind": failure.kind.value,
        "correlationId": correlation_id,
    }
    if failure.kind is FailureKind.DOWNSTREAM_UNAVAILABLE:
        body["peer"] = failure.peer
        body["peerStatus"] = failure.peer_status
    return body


def error_envelope(kind: FailureKind, message: str, correlation_id: str) -> ErrorEnvelope:
    return ErrorEnvelope(
        error=f"{kind.value}: {message}",
        correlationId=correlation_id,
        timestamp=datetime.now(timezone.utc),
    )
