"""Correlation identifiers shared by every hop of a request chain."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from typing import NewType


CorrelationId = NewType("CorrelationId", str)

DEFAULT_HEADER = "X-Correlation-ID"

# Accepted on inbound requests in addition to the configured header (checked in order).
ALIAS_HEADERS = ("x-request-id",)

# Longer inbound values are treated as absent rather than echoed back.
MAX_INBOUND_LENGTH = 200


def new_correlation_id() -> CorrelationId:
    return CorrelationId(str(uuid.uuid4()))


def _lookup(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None and name.lower() != name:
        value = headers.get(name.lower())
    return value


def _usable(value: str | None) -> bool:
    if value is None or not value.strip():
        return False
    if len(value) > MAX_INBOUND_LENGTH:
        return False
    return value.isprintable()


def acquire(headers: Mapping[str, str], header_name: str = DEFAULT_HEADER) -> CorrelationId:
    """Reuse the upstream correlation id verbatim, or generate a new one.

    ``headers`` may be any mapping; Starlette's case-insensitive ``Headers``
    and plain dicts with lower-cased keys both work.
    """

    for name in (header_name, *ALIAS_HEADERS):
        value = _lookup(headers, name)
        if _usable(value):
            return CorrelationId(value)  # type: ignore[arg-type]
    return new_correlation_id()
