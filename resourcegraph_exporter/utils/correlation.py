"""Request correlation ids for probe logging.

Each scrape gets an id (the caller's ``x-correlation-id`` header or a fresh
uuid4) stored in a ContextVar, so the per-query tasks a probe fans out to,
and the Resource Graph calls they make, all log the same ``req_id``.
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar
from typing import Optional

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set (or generate) the current request id and return it."""
    value = request_id or uuid.uuid4().hex
    _request_id_var.set(value)
    return value


def get_request_id() -> str:
    """Return the current request correlation id, or empty string."""
    return _request_id_var.get()
