# routes/payments.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from app.billing import service
from deps.auth import CurrentUser, get_current_user
from routes.views import payment_out, status_response
from schemas import PaymentCreateRequest, PaymentOut, PaymentStatusResponse

router = APIRouter(prefix="/v1", tags=["payments"])


@router.post("/transactions/{transaction_id}/payments", response_model=PaymentOut, status_code=201)
def create_payment(
    transaction_id: str,
    body: PaymentCreateRequest,
    user: CurrentUser = Depends(get_current_user),
):
    payment = service.create_payment(transaction_id, body.method, customer_id=user.user_id)
    return payment_out(payment)


@router.get("/payments/{payment_id}/status", response_model=PaymentStatusResponse)
def payment_status(payment_id: str, user: CurrentUser = Depends(get_current_user)):
    """
    Poll target for checkout pages. Each call reconciles expiry, picks up
    gateway confirmations and finishes activation once paid.
    """
    view = service.get_status(payment_id, customer_id=user.user_id)
    return status_response(view)
