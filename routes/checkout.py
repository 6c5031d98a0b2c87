# routes/checkout.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from app.billing import service
from deps.auth import CurrentUser, get_current_user
from schemas import LineOut, PreviewRequest, PreviewResponse, PricingOut

router = APIRouter(prefix="/v1/checkout", tags=["checkout"])


def cart_lines(body) -> list[service.CartLine]:
    return [
        service.CartLine(kind=i.kind, item_id=i.item_id, quantity=i.quantity, duration=i.duration)
        for i in body.items
    ]


@router.post("/preview", response_model=PreviewResponse)
def checkout_preview(body: PreviewRequest, user: CurrentUser = Depends(get_current_user)):
    result = service.preview(
        customer_id=user.user_id,
        lines=cart_lines(body),
        currency=body.currency,
        voucher_code=body.voucher_code,
        method=(body.method or "").strip().lower() or None,
    )
    return PreviewResponse(
        currency=result["currency"],
        items=[LineOut.model_validate(i, from_attributes=True) for i in result["items"]],
        pricing=PricingOut.model_validate(result["pricing"], from_attributes=True),
        voucher_code=result["voucher_code"],
        method=result["method"],
        requires_manual_approval=result["requires_manual_approval"],
    )
