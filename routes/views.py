# routes/views.py
from __future__ import annotations

from dataclasses import asdict
from typing import Any

from app.billing.service import StatusView, TransactionView
from schemas import (
    ActivationOut,
    LineOut,
    PaymentOut,
    PaymentStatusResponse,
    StatusPricingOut,
    TransactionDetailResponse,
    TransactionOut,
)


def transaction_out(tx) -> TransactionOut:
    return TransactionOut.model_validate(tx, from_attributes=True)


def payment_out(payment) -> PaymentOut:
    return PaymentOut.model_validate(payment, from_attributes=True)


def status_response(view: StatusView) -> PaymentStatusResponse:
    return PaymentStatusResponse(
        payment=payment_out(view.payment),
        transaction=transaction_out(view.transaction),
        pricing=StatusPricingOut(**view.pricing),
        instructions=view.instructions,
        activation=ActivationOut(**view.activation.as_dict()) if view.activation else None,
        changed=view.changed,
    )


def _grants_out(grants: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name, value in grants.items():
        if value is None:
            out[name] = None
        elif isinstance(value, list):
            out[name] = [asdict(v) for v in value]
        else:
            out[name] = asdict(value)
    return out


def transaction_detail(view: TransactionView) -> TransactionDetailResponse:
    return TransactionDetailResponse(
        transaction=transaction_out(view.transaction),
        items=[LineOut.model_validate(i, from_attributes=True) for i in view.items],
        payment=payment_out(view.payment) if view.payment else None,
        grants=_grants_out(view.grants),
    )
