# app/gateways/http.py
from __future__ import annotations

import logging
from typing import Any

import httpx

from app.gateways.base import GatewayResult, map_gateway_status

logger = logging.getLogger("billing.gateway")


def is_retryable_http(code: int) -> bool:
    # Retry transient / throttling / gateway issues
    return code in (408, 425, 429, 500, 502, 503, 504)


class HttpGateway:
    """
    REST gateway client: POST {base}/charges, GET {base}/charges/{external_id}.
    Calls happen outside any transaction lock.
    """

    def __init__(self, *, base_url: str, api_key: str, timeout_s: float = 20.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout_s, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _json(r: httpx.Response) -> dict[str, Any] | None:
        try:
            payload = r.json()
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None

    def create_charge(self, payment: dict[str, Any]) -> GatewayResult:
        body = {
            "reference": str(payment["id"]),
            "amount": str(payment["amount"]),
            "currency": str(payment["currency"]).upper(),
            "method": payment["method"],
        }
        try:
            r = self._client.post(f"{self.base_url}/charges", headers=self._headers(), json=body)
        except httpx.HTTPError as exc:
            logger.warning("gateway_create_error payment_id=%s error=%s", payment["id"], exc)
            return GatewayResult(status="failed", response={"http_status": None}, error=f"{type(exc).__name__}")

        data = self._json(r) or {}
        if r.status_code >= 400:
            return GatewayResult(
                status="failed",
                response={"http_status": r.status_code, "retryable": is_retryable_http(r.status_code)},
                error=str(data.get("message") or r.text[:200]),
            )
        return GatewayResult(
            status=map_gateway_status(data.get("status")),
            external_id=str(data.get("id") or data.get("external_id") or "") or None,
            payment_url=data.get("payment_url") or data.get("redirect_url"),
            response={"http_status": r.status_code},
        )

    def get_charge_status(self, payment: dict[str, Any]) -> GatewayResult:
        external_id = payment.get("external_id")
        if not external_id:
            return GatewayResult(status="pending", error="MISSING_EXTERNAL_ID")
        try:
            r = self._client.get(f"{self.base_url}/charges/{external_id}", headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("gateway_status_error external_id=%s error=%s", external_id, exc)
            return GatewayResult(status="pending", external_id=external_id, error=f"{type(exc).__name__}")

        data = self._json(r) or {}
        if r.status_code >= 400:
            return GatewayResult(
                status="pending",
                external_id=external_id,
                response={"http_status": r.status_code},
                error=str(data.get("message") or r.text[:200]),
            )
        return GatewayResult(
            status=map_gateway_status(data.get("status") or data.get("transaction_status")),
            external_id=external_id,
            response={"http_status": r.status_code, "status": data.get("status")},
        )
