# routes/admin_payments.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from app.billing import service
from deps.admin import require_admin
from deps.auth import CurrentUser
from routes.views import status_response
from schemas import ApproveRequest, PaymentStatusResponse, RejectRequest

router = APIRouter(prefix="/v1/admin/payments", tags=["admin_payments"])


@router.post("/{payment_id}/approve", response_model=PaymentStatusResponse)
def approve_payment(
    payment_id: str,
    body: ApproveRequest | None = None,
    admin: CurrentUser = Depends(require_admin),
):
    """Manual bank transfer verified: pending -> paid, then activation."""
    view = service.approve(payment_id, admin_id=admin.user_id, notes=body.notes if body else None)
    return status_response(view)


@router.post("/{payment_id}/reject", response_model=PaymentStatusResponse)
def reject_payment(
    payment_id: str,
    body: RejectRequest,
    admin: CurrentUser = Depends(require_admin),
):
    view = service.reject(payment_id, admin_id=admin.user_id, reason=body.reason)
    return status_response(view)
