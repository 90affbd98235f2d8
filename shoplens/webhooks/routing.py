"""Raw-body capture for signature-bearing routes.

Routers built with ``route_class=SignedBodyRoute`` read the request body
into ``request.state.raw_body`` before FastAPI decodes anything, so the
bytes that reach the signature check are exactly the bytes that were
signed. Whether capture happens is decided when the route is registered,
never by inspecting the path of a live request.
"""

from __future__ import annotations

from typing import Callable, Coroutine, Any

from fastapi import Request, Response
from fastapi.routing import APIRoute


class SignedBodyRoute(APIRoute):
    """APIRoute that preserves the unmodified request body."""

    def get_route_handler(self) -> Callable[[Request], Coroutine[Any, Any, Response]]:
        original_handler = super().get_route_handler()

        async def capture_raw_body(request: Request) -> Response:
            request.state.raw_body = await request.body()
            return await original_handler(request)

        return capture_raw_body


def raw_body(request: Request) -> bytes | None:
    """Bytes captured by SignedBodyRoute, or None for routes without capture."""
    return getattr(request.state, "raw_body", None)
