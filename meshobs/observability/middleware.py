from __future__ import annotations

from typing import Any, Callable

from starlette.datastructures import Headers, MutableHeaders

from meshobs.observability.correlation import DEFAULT_HEADER, acquire


class CorrelationHeaderMiddleware:
    """Puts the correlation header on responses the pipeline never saw.

    Router 404/405s, health and metrics answers bypass the pipeline; they echo
    the inbound id (or a fresh one). Pipeline responses already carry the
    header and are left alone.
    """

    def __init__(self, app: Callable[..., Any], header_name: str = DEFAULT_HEADER) -> None:
        self.app = app
        self.header_name = header_name

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                headers = MutableHeaders(scope=message)
                if self.header_name not in headers:
                    headers[self.header_name] = acquire(Headers(scope=scope), self.header_name)

            await send(message)

        await self.app(scope, receive, send_wrapper)
