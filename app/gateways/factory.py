# app/gateways/factory.py
from __future__ import annotations

from typing import Any, Dict

from settings import settings

_GATEWAY_CACHE: Dict[str, Any] = {}


def get_gateway():
    mode = (settings.GATEWAY_MODE or "sandbox").strip().lower()
    if mode in _GATEWAY_CACHE:
        return _GATEWAY_CACHE[mode]

    if mode == "real":
        from app.gateways.http import HttpGateway
        gateway = HttpGateway(
            base_url=settings.GATEWAY_BASE_URL,
            api_key=settings.GATEWAY_API_KEY,
            timeout_s=settings.GATEWAY_HTTP_TIMEOUT_S,
        )
    else:
        from app.gateways.sandbox import SandboxGateway
        gateway = SandboxGateway()

    _GATEWAY_CACHE[mode] = gateway
    return gateway


def reset_gateway_cache() -> None:
    _GATEWAY_CACHE.clear()
