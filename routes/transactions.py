# routes/transactions.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse

from app.billing import service
from app.billing.store import open_store
from deps.auth import CurrentUser, get_current_user
from routes.checkout import cart_lines
from routes.views import transaction_detail, transaction_out
from schemas import CancelRequest, CancelResponse, CheckoutRequest, TransactionDetailResponse, TransactionOut
from services.idempotency import replay_or_conflict, request_hash
from services.metrics import increment_idempotency_replay

logger = logging.getLogger("billing.routes")
router = APIRouter(prefix="/v1/transactions", tags=["transactions"])

CREATE_ROUTE_KEY = "POST:/v1/transactions"


def _clean_idempotency_key(idempotency_key: str | None) -> str | None:
    if idempotency_key is None:
        return None
    key = idempotency_key.strip()
    if not key:
        raise HTTPException(status_code=400, detail="Empty Idempotency-Key header")
    if len(key) > 128:
        raise HTTPException(status_code=400, detail="Idempotency-Key too long")
    return key


@router.post("", response_model=TransactionOut, status_code=201)
def create_transaction(
    body: CheckoutRequest,
    user: CurrentUser = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = _clean_idempotency_key(idempotency_key)
    body_hash = request_hash(body.model_dump(mode="json"))

    if key:
        with open_store() as store:
            stored = store.get_idempotency(user_id=user.user_id, idempotency_key=key, route_key=CREATE_ROUTE_KEY)
        try:
            replay = replay_or_conflict(stored, body_hash)
        except ValueError:
            raise HTTPException(status_code=409, detail="IDEMPOTENCY_KEY_REUSED")
        if replay is not None:
            increment_idempotency_replay(CREATE_ROUTE_KEY)
            return JSONResponse(status_code=int(replay["status_code"]), content=replay["response_json"])

    tx = service.create_transaction(
        customer_id=user.user_id,
        lines=cart_lines(body),
        currency=body.currency,
        voucher_code=body.voucher_code,
    )
    out = transaction_out(tx)

    if key:
        with open_store() as store:
            stored = store.store_idempotency(
                user_id=user.user_id,
                idempotency_key=key,
                route_key=CREATE_ROUTE_KEY,
                request_hash_value=body_hash,
                response_json=out.model_dump(mode="json"),
                status_code=201,
            )
        if stored["response_json"].get("id") != out.id:
            # lost a same-key race; the first writer's transaction is the answer
            logger.info("idempotency_race_lost key=%s orphan_transaction_id=%s", key, out.id)
            return JSONResponse(status_code=int(stored["status_code"]), content=stored["response_json"])

    return out


@router.get("/{transaction_id}", response_model=TransactionDetailResponse)
def get_transaction(transaction_id: str, user: CurrentUser = Depends(get_current_user)):
    view = service.get_transaction(transaction_id, customer_id=user.user_id)
    return transaction_detail(view)


@router.post("/{transaction_id}/cancel", response_model=CancelResponse)
def cancel_transaction(
    transaction_id: str,
    body: CancelRequest | None = None,
    user: CurrentUser = Depends(get_current_user),
):
    cancelled = service.cancel(
        transaction_id,
        body.reason if body else None,
        actor_id=user.user_id,
        is_admin=False,
    )
    return CancelResponse(transaction_id=transaction_id, cancelled=cancelled)
