# app/gateways/base.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Literal

GatewayStatus = Literal["pending", "paid", "failed", "expired"]

_PAID = {"success", "successful", "paid", "settlement", "settled", "capture", "captured", "completed"}
_FAILED = {"failed", "failure", "deny", "denied", "cancel", "cancelled", "canceled", "rejected"}
_EXPIRED = {"expire", "expired"}


def map_gateway_status(status_raw: str | None) -> GatewayStatus:
    status = (status_raw or "").strip().lower()
    if status in _PAID:
        return "paid"
    if status in _FAILED:
        return "failed"
    if status in _EXPIRED:
        return "expired"
    # in-flight/unknown -> keep waiting
    return "pending"


@dataclass(frozen=True)
class GatewayResult:
    status: GatewayStatus
    external_id: Optional[str] = None
    payment_url: Optional[str] = None
    response: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PaymentGateway(Protocol):
    def create_charge(self, payment: dict[str, Any]) -> GatewayResult: ...
    def get_charge_status(self, payment: dict[str, Any]) -> GatewayResult: ...
