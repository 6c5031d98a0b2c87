# routes/webhooks.py
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.billing import service
from schemas import GatewayWebhookResponse
from services.metrics import increment_webhook_event
from settings import settings

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])
logger = logging.getLogger("billing.webhooks")

SIGNATURE_HEADER = "X-Signature"


def _verify_signature(*, raw: bytes, signature_header: str | None, secret: str | None) -> tuple[bool, str | None]:
    if not secret or not secret.strip():
        return False, "WEBHOOK_SECRET_NOT_CONFIGURED"

    if not signature_header or not signature_header.strip():
        return False, "MISSING_SIGNATURE"

    sig = signature_header.strip()
    if sig.lower().startswith("sha256="):
        sig = sig.split("=", 1)[1].strip()

    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig):
        return False, "INVALID_SIGNATURE"

    return True, None


def _unwrap_payload(payload: Any) -> Any:
    """
    Some gateways wrap payloads like {"data": {...}}.
    """
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    return payload


def _extract_refs(payload: dict) -> tuple[str | None, str | None, str]:
    """
    (payment_id, external_id, status). Either reference is enough.
    """
    payment_id = (
        payload.get("payment_id")
        or payload.get("merchant_ref")
        or payload.get("order_id")
        or payload.get("reference")
        or ""
    )
    payment_id = str(payment_id).strip() or None

    external_id = (
        payload.get("external_id")
        or payload.get("charge_id")
        or payload.get("id")
        or ""
    )
    external_id = str(external_id).strip() or None

    status = str(payload.get("status") or payload.get("transaction_status") or payload.get("state") or "").strip()
    return payment_id, external_id, status


@router.post("/gateway", response_model=GatewayWebhookResponse)
async def gateway_webhook(req: Request):
    raw = await req.body()
    sig_ok, sig_err = _verify_signature(
        raw=raw,
        signature_header=req.headers.get(SIGNATURE_HEADER),
        secret=settings.GATEWAY_WEBHOOK_SECRET,
    )

    # deployment misconfig, not the caller's fault
    if sig_err == "WEBHOOK_SECRET_NOT_CONFIGURED":
        logger.error("webhook_rejected reason=%s", sig_err)
        increment_webhook_event(False, False)
        raise HTTPException(status_code=500, detail={"error": sig_err})

    if not sig_ok:
        logger.warning("webhook_rejected reason=%s", sig_err)
        increment_webhook_event(False, False)
        raise HTTPException(status_code=401, detail={"error": sig_err})

    try:
        payload_obj = json.loads(raw.decode("utf-8")) if raw else None
    except (UnicodeDecodeError, json.JSONDecodeError):
        payload_obj = None

    payload_obj = _unwrap_payload(payload_obj)
    if not isinstance(payload_obj, dict):
        increment_webhook_event(True, False)
        raise HTTPException(status_code=400, detail={"error": "INVALID_JSON_OBJECT"})

    payment_id, external_id, status_raw = _extract_refs(payload_obj)
    if not status_raw:
        increment_webhook_event(True, False)
        raise HTTPException(status_code=400, detail={"error": "MISSING_STATUS"})
    if not payment_id and not external_id:
        increment_webhook_event(True, False)
        raise HTTPException(status_code=400, detail={"error": "MISSING_PAYMENT_REF"})

    # engine is sync; keep it off the event loop
    result = await run_in_threadpool(
        lambda: service.apply_gateway_status(
            status_raw=status_raw,
            payment_id=payment_id,
            external_id=external_id,
        )
    )

    applied = bool(result.get("applied"))
    increment_webhook_event(True, applied)
    logger.info(
        "webhook_processed payment_id=%s external_id=%s status=%s applied=%s reason=%s",
        payment_id,
        external_id,
        status_raw,
        applied,
        result.get("reason"),
    )

    # unknown payment or stale update: 200 so the gateway stops retrying
    return GatewayWebhookResponse(
        ok=True,
        applied=applied,
        ignored=bool(result.get("ignored")),
        reason=result.get("reason"),
        payment_id=result.get("payment_id"),
        status=result.get("status"),
    )
