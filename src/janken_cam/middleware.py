from __future__ import annotations

import secrets
from collections.abc import Callable
from typing import Final

from fastapi import Header
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .config import Settings
from .errors import AppError, ErrorCode
from .request_context import request_id_var, resolve_request_id

REQUEST_ID_HEADER: Final[str] = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id to the context for log correlation and echo it back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = rid
        return response


def api_key_dependency(settings: Settings) -> Callable[[str | None], None]:
    """Route dependency enforcing ``X-API-Key`` when a key is configured."""
    expected = settings.security.api_key.strip()

    def _check(x_api_key: str | None = Header(default=None)) -> None:
        if not expected:
            return
        if x_api_key is None or not secrets.compare_digest(x_api_key, expected):
            raise AppError.of(ErrorCode.unauthorized)

    return _check
