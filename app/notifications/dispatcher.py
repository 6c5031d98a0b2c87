# app/notifications/dispatcher.py
from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from services.metrics import increment_notification
from services.observability import get_request_id
from settings import settings

logger = logging.getLogger("billing.notifications")

Sink = Callable[[str, dict[str, Any]], None]

_extra_sinks: list[Sink] = []


def register_sink(sink: Sink) -> None:
    _extra_sinks.append(sink)


def clear_sinks() -> None:
    _extra_sinks.clear()


def log_sink(event: str, payload: dict[str, Any]) -> None:
    logger.info("notify event=%s payload=%s", event, payload)


def http_sink(event: str, payload: dict[str, Any]) -> None:
    r = httpx.post(
        settings.NOTIFY_WEBHOOK_URL,
        json={"event": event, "data": payload, "request_id": get_request_id()},
        timeout=settings.NOTIFY_HTTP_TIMEOUT_S,
    )
    r.raise_for_status()


def _sinks() -> list[Sink]:
    sinks: list[Sink] = [log_sink]
    if (settings.NOTIFY_WEBHOOK_URL or "").strip():
        sinks.append(http_sink)
    sinks.extend(_extra_sinks)
    return sinks


def notify(event: str, payload: dict[str, Any]) -> None:
    """
    Fire-and-forget. Called after the state change has committed;
    a failing sink is logged and never reaches the caller.
    """
    for sink in _sinks():
        try:
            sink(event, payload)
            increment_notification(event, "sent")
        except Exception:
            increment_notification(event, "failed")
            logger.exception("notify_failed event=%s sink=%s", event, getattr(sink, "__name__", sink))
