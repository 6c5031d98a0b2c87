# tests/conftest.py
from __future__ import annotations

import hashlib
import hmac
import os
import uuid

# the suite runs against the in-process store; must be set before settings is imported
os.environ.setdefault("BILLING_STORE", "memory")
os.environ.setdefault("ENV", "test")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from app.billing import memory_store
from app.billing.models import Payment, ServiceFeeRule, Transaction, Voucher
from app.gateways.factory import reset_gateway_cache
from app.notifications.dispatcher import clear_sinks
from security import ROLE_ADMIN, ROLE_CUSTOMER, create_access_token
from services.metrics import reset_counters
from settings import settings

CUSTOMER_ID = "cust-1001"
OTHER_CUSTOMER_ID = "cust-2002"
ADMIN_ID = "admin-1"

WEBHOOK_SECRET = "whsec_test_gateway"
CRON_SECRET = "cron_test_secret"


# ---------------------------
# State reset
# ---------------------------

@pytest.fixture(autouse=True)
def _fresh_state(monkeypatch):
    monkeypatch.setattr(settings, "BILLING_STORE", "memory", raising=False)
    monkeypatch.setattr(settings, "GATEWAY_MODE", "sandbox", raising=False)
    monkeypatch.setattr(settings, "NOTIFY_WEBHOOK_URL", "", raising=False)
    monkeypatch.setattr(settings, "LOCK_RETRY_BACKOFF_MS", 1, raising=False)
    memory_store.reset()
    reset_gateway_cache()
    reset_counters()
    clear_sinks()
    yield
    clear_sinks()
    reset_gateway_cache()


# ---------------------------
# Catalog
# ---------------------------

@pytest.fixture
def catalog():
    """
    Seeds the in-memory catalog:
      product  pkg-basic   IDR 100,000 / USD 10
      product  pkg-pro     IDR 250,000
      addon    addon-ssl   IDR 50,000
      whatsapp wa-starter  IDR 100,000 / month, IDR 1,000,000 / year
    """
    cat = memory_store.get_database().catalog
    cat.add_item("product", "pkg-basic", name="Basic Package", prices={"idr": Decimal("100000"), "usd": Decimal("10")})
    cat.add_item("product", "pkg-pro", name="Pro Package", prices={"idr": Decimal("250000")})
    cat.add_item("addon", "addon-ssl", name="SSL Certificate", prices={"idr": Decimal("50000")})
    cat.add_item(
        "whatsapp",
        "wa-starter",
        name="WhatsApp Starter",
        duration_prices={("idr", "month"): Decimal("100000"), ("idr", "year"): Decimal("1000000")},
    )

    cat.add_fee_rule(
        ServiceFeeRule(
            payment_method="manual_bank_transfer",
            currency="idr",
            fee_type="fixed",
            value=Decimal("3500"),
            requires_manual_approval=True,
            name="Bank transfer",
            payment_instructions="Transfer to BCA 123-456-7890 a/n PT Contoh",
        )
    )
    cat.add_fee_rule(ServiceFeeRule(payment_method="va_bca", currency="idr", fee_type="fixed", value=Decimal("4000")))
    cat.add_fee_rule(
        ServiceFeeRule(
            payment_method="qris",
            currency="idr",
            fee_type="percentage",
            value=Decimal("0.7"),
            min_fee=Decimal("1000"),
        )
    )
    cat.add_voucher(
        Voucher(
            id="11111111-1111-1111-1111-111111111111",
            code="SAVE10",
            name="10% off",
            voucher_type="percentage",
            value=Decimal("10"),
            max_discount=Decimal("5000"),
        )
    )
    return cat


# ---------------------------
# Client + Auth Helpers
# ---------------------------

@pytest.fixture
def client() -> TestClient:
    from main import create_app

    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    return TestClient(create_app(), raise_server_exceptions=False)


def _auth_headers(user_id: str = CUSTOMER_ID, role: str = ROLE_CUSTOMER, idem: str | None = None) -> Dict[str, str]:
    h = {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}
    if idem:
        h["Idempotency-Key"] = idem
    return h


def _admin_headers() -> Dict[str, str]:
    return _auth_headers(ADMIN_ID, role=ROLE_ADMIN)


@pytest.fixture
def sandbox_gateway():
    from app.gateways.factory import get_gateway

    return get_gateway()


def _sign(raw: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def _create_tx(
    client: TestClient,
    items: Optional[List[Dict[str, Any]]] = None,
    *,
    currency: str = "idr",
    voucher_code: Optional[str] = None,
    user_id: str = CUSTOMER_ID,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "currency": currency,
        "items": items or [{"kind": "product", "item_id": "pkg-basic"}],
    }
    if voucher_code:
        payload["voucher_code"] = voucher_code
    r = client.post("/v1/transactions", json=payload, headers=_auth_headers(user_id))
    assert r.status_code == 201, r.text
    return r.json()


def _create_payment(client: TestClient, tx_id: str, method: str, *, user_id: str = CUSTOMER_ID) -> Dict[str, Any]:
    r = client.post(f"/v1/transactions/{tx_id}/payments", json={"method": method}, headers=_auth_headers(user_id))
    assert r.status_code == 201, r.text
    return r.json()


# ---------------------------
# Row builders
# ---------------------------

T0 = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def _make_tx(**kw) -> Transaction:
    base: Dict[str, Any] = dict(
        id=str(uuid.uuid4()),
        customer_id=CUSTOMER_ID,
        currency="idr",
        type="product",
        original_amount=Decimal("100000.00"),
        discount_amount=Decimal("0.00"),
        service_fee_amount=Decimal("0.00"),
        final_amount=Decimal("100000.00"),
        status="created",
        created_at=T0,
        updated_at=T0,
        expires_at=T0 + timedelta(days=7),
    )
    base.update(kw)
    return Transaction(**base)


def _make_payment(tx: Transaction, **kw) -> Payment:
    base: Dict[str, Any] = dict(
        id=str(uuid.uuid4()),
        transaction_id=tx.id,
        method="va_bca",
        amount=tx.final_amount,
        service_fee=Decimal("0.00"),
        status="pending",
        requires_manual_approval=False,
        created_at=T0,
        updated_at=T0,
        expires_at=T0 + timedelta(hours=24),
    )
    base.update(kw)
    return Payment(**base)
