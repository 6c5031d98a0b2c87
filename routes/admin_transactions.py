# routes/admin_transactions.py
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from app.billing import service
from app.billing.store import open_store
from deps.admin import require_admin
from deps.auth import CurrentUser
from routes.views import transaction_detail
from schemas import (
    ActivationOut,
    CancelRequest,
    CancelResponse,
    DeliveryCompleteResponse,
    TransactionDetailResponse,
)

router = APIRouter(prefix="/v1/admin/transactions", tags=["admin_transactions"])


@router.get("/{transaction_id}", response_model=TransactionDetailResponse)
def admin_get_transaction(transaction_id: str, _admin: CurrentUser = Depends(require_admin)):
    return transaction_detail(service.get_transaction(transaction_id))


@router.post("/{transaction_id}/activate", response_model=ActivationOut)
def admin_activate(transaction_id: str, _admin: CurrentUser = Depends(require_admin)):
    """Re-run activation, e.g. after a partial failure. Grants that already exist are skipped."""
    result = service.activate(transaction_id)
    return ActivationOut(**result.as_dict())


@router.post("/{transaction_id}/cancel", response_model=CancelResponse)
def admin_cancel(
    transaction_id: str,
    body: CancelRequest | None = None,
    admin: CurrentUser = Depends(require_admin),
):
    cancelled = service.cancel(
        transaction_id,
        body.reason if body else None,
        actor_id=admin.user_id,
        is_admin=True,
    )
    return CancelResponse(transaction_id=transaction_id, cancelled=cancelled)


@router.post("/{transaction_id}/deliveries/complete", response_model=DeliveryCompleteResponse)
def admin_complete_deliveries(transaction_id: str, admin: CurrentUser = Depends(require_admin)):
    changed = service.complete_delivery(transaction_id, admin_id=admin.user_id)
    return DeliveryCompleteResponse(transaction_id=transaction_id, records_updated=changed)


@router.get("/{target_id}/audit")
def admin_audit_events(target_id: str, _admin: CurrentUser = Depends(require_admin)) -> dict[str, Any]:
    with open_store() as store:
        events = store.list_audit(target_id)
    return {"target_id": target_id, "events": events}
