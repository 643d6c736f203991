"""Request context middleware for logging correlation and caller identity."""

from __future__ import annotations

import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from genorch.logging import bind_context, unbind_context

REQUEST_ID_HEADER = "x-request-id"
USER_HEADER = "x-user-id"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind the request ID and the calling user to logs for one request.

    Authentication happens upstream; the gateway forwards the resolved user
    in the ``x-user-id`` header. Poll workers started by a submit inherit
    both identifiers.
    """

    async def dispatch(  # type: ignore[override]
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        user_id = request.headers.get(USER_HEADER) or None
        request.state.request_id = request_id
        request.state.user_id = user_id

        tokens = bind_context(request_id=request_id, user_id=user_id)
        try:
            response = await call_next(request)
        finally:
            unbind_context(tokens)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response
