# app/gateways/sandbox.py
from __future__ import annotations

from typing import Any

from app.gateways.base import GatewayResult, map_gateway_status


class SandboxGateway:
    """
    Test/dev gateway. Never touches the network.

    `charge_status` is what status polls report back, so tests can drive a
    payment to paid/failed without a webhook.
    """

    def __init__(self, *, charge_status: str = "pending", fail_create: bool = False):
        self.charge_status = charge_status
        self.fail_create = fail_create
        self.created: list[str] = []

    def create_charge(self, payment: dict[str, Any]) -> GatewayResult:
        payment_id = str(payment.get("id"))
        if self.fail_create:
            return GatewayResult(
                status="failed",
                response={"http_status": 502, "sandbox": True},
                error="Gateway unavailable",
            )
        self.created.append(payment_id)
        return GatewayResult(
            status="pending",
            external_id=f"sbx-{payment_id}",
            payment_url=f"https://sandbox.gateway.local/pay/{payment_id}",
            response={"http_status": 201, "sandbox": True},
        )

    def get_charge_status(self, payment: dict[str, Any]) -> GatewayResult:
        return GatewayResult(
            status=map_gateway_status(self.charge_status),
            external_id=payment.get("external_id"),
            response={"http_status": 200, "status": self.charge_status, "sandbox": True},
        )
