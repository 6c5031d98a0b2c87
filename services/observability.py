from __future__ import annotations

import uuid
from contextvars import ContextVar


# request id of the HTTP call in flight; audit rows and notifications pick it up
_request_id: ContextVar[str | None] = ContextVar("billing_request_id", default=None)

MAX_REQUEST_ID_LEN = 128


def resolve_request_id(incoming: str | None) -> str:
    """Client-supplied id if it is sane, otherwise a fresh uuid4."""
    value = (incoming or "").strip()
    if not value or len(value) > MAX_REQUEST_ID_LEN:
        return str(uuid.uuid4())
    return value


def set_request_id(value: str | None) -> None:
    _request_id.set(value)


def get_request_id() -> str | None:
    return _request_id.get()
