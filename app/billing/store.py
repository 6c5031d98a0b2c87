# app/billing/store.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from settings import settings


@contextmanager
def open_store() -> Iterator:
    """
    One unit of work against the configured billing store.
    Commits on clean exit; locks taken inside are released on every exit path.
    """
    if settings.BILLING_STORE == "memory":
        from app.billing import memory_store

        with memory_store.session() as store:
            yield store
        return

    from db import get_conn
    from app.billing.repository import PgBillingStore

    with get_conn() as conn:
        yield PgBillingStore(conn)
