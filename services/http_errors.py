# services/http_errors.py
from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.billing.errors import BillingError

logger = logging.getLogger("billing.http")

ERROR_HTTP_MAP: dict[str, tuple[int, str]] = {
    "INVALID_PRICING_INPUT": (422, "Invalid order"),
    "VOUCHER_INVALID": (422, "Invalid voucher"),
    "VOUCHER_EXPIRED": (422, "Voucher expired"),
    "VOUCHER_EXHAUSTED": (422, "Voucher no longer available"),
    "VOUCHER_CURRENCY_MISMATCH": (422, "Voucher not valid for this currency"),
    "CATALOG_ITEM_NOT_FOUND": (404, "Item not found"),
    "TRANSACTION_NOT_FOUND": (404, "Transaction not found"),
    "PAYMENT_NOT_FOUND": (404, "Payment not found"),
    "ILLEGAL_TRANSACTION_TRANSITION": (409, "Transaction cannot change to that status"),
    "ILLEGAL_PAYMENT_TRANSITION": (409, "Payment cannot change to that status"),
    "TRANSACTION_NOT_PENDING": (409, "Transaction is not awaiting payment"),
    "ACTIVATION_PRECONDITION_FAILED": (409, "Transaction is not ready for activation"),
    "LOCK_CONTENTION": (503, "Transaction busy, retry shortly"),
    "GATEWAY_ERROR": (502, "Payment gateway unavailable"),
}

RETRY_AFTER_SECONDS = "1"


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """
    Known engine errors become {"detail": {"code", "message"}}.
    Unknown codes fail closed as a plain 500.
    """
    if exc.code not in ERROR_HTTP_MAP:
        logger.error("unmapped_billing_error code=%s path=%s", exc.code, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    status, _ = ERROR_HTTP_MAP[exc.code]
    headers = None
    if status == 503:
        headers = {"Retry-After": RETRY_AFTER_SECONDS}
    if status >= 500:
        logger.warning("billing_error code=%s path=%s message=%s", exc.code, request.url.path, exc.message)

    return JSONResponse(
        status_code=status,
        content={"detail": {"code": exc.code, "message": exc.message}},
        headers=headers,
    )
