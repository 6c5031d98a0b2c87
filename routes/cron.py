# routes/cron.py
from __future__ import annotations

import hmac

from fastapi import APIRouter, Header, HTTPException, Query

from app.billing import service
from schemas import SweepResponse
from settings import settings

router = APIRouter(prefix="/v1/cron", tags=["cron"])


def _require_cron_secret(authorization: str | None) -> None:
    secret = (settings.CRON_SECRET or "").strip()
    if not secret:
        raise HTTPException(status_code=503, detail="CRON_NOT_CONFIGURED")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), secret):
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")


@router.post("/expire-payments", response_model=SweepResponse)
def expire_payments(
    authorization: str | None = Header(default=None),
    batch_size: int | None = Query(default=None, ge=1, le=1000),
):
    """External scheduler hook for the expiry sweep."""
    _require_cron_secret(authorization)
    return SweepResponse(**service.sweep(batch_size=batch_size))
