from __future__ import annotations

import contextvars
import uuid

# Correlation id of the HTTP request being served; blank outside a request
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")


def resolve_request_id(header_value: str | None) -> str:
    """Use the caller's ``X-Request-ID`` when present, else mint a uuid4."""
    rid = (header_value or "").strip()
    return rid if rid else str(uuid.uuid4())
