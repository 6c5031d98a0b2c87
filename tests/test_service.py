from __future__ import annotations

from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal

import pytest

from app.billing import memory_store, service
from app.billing.errors import (
    CatalogItemNotFound,
    GatewayError,
    IllegalPaymentTransition,
    IllegalTransactionTransition,
    InvalidPricingInput,
    PaymentNotFound,
    TransactionNotFound,
    TransactionNotPending,
)
from app.billing.pricing import UNIQUE_CODE_MAX, UNIQUE_CODE_MIN
from app.notifications.dispatcher import register_sink
from services.metrics import get_counter
from settings import settings
from tests.conftest import ADMIN_ID, CUSTOMER_ID, OTHER_CUSTOMER_ID, T0

BASIC = service.CartLine(kind="product", item_id="pkg-basic")
SSL = service.CartLine(kind="addon", item_id="addon-ssl")
WA_MONTH = service.CartLine(kind="whatsapp", item_id="wa-starter", duration="month")


@pytest.fixture
def events():
    seen = []
    register_sink(lambda event, payload: seen.append((event, payload)))
    return seen


def _tx(lines=None, *, customer_id=CUSTOMER_ID, voucher_code=None, now=T0):
    return service.create_transaction(
        customer_id=customer_id,
        lines=lines or [BASIC],
        currency="idr",
        voucher_code=voucher_code,
        now=now,
    )


# ---------------------------
# Cart / transaction creation
# ---------------------------

def test_create_transaction_prices_and_types(catalog, events):
    tx = _tx([BASIC, SSL, WA_MONTH])
    assert tx.status == "created"
    assert tx.type == "product_addon_whatsapp"
    assert tx.original_amount == Decimal("250000.00")
    assert tx.final_amount == Decimal("250000.00")
    assert tx.service_fee_amount == Decimal("0.00")
    assert tx.expires_at == T0 + timedelta(days=7)

    with memory_store.session() as store:
        items = store.list_items(tx.id)
    assert [(i.kind, i.duration) for i in items] == [("product", None), ("addon", None), ("whatsapp", "month")]
    assert events[0][0] == "transaction.created"


def test_whatsapp_duration_defaults_to_month(catalog):
    tx = _tx([service.CartLine(kind="whatsapp", item_id="wa-starter")])
    assert tx.type == "whatsapp_service"
    assert tx.final_amount == Decimal("100000.00")


def test_yearly_whatsapp_price(catalog):
    tx = _tx([service.CartLine(kind="whatsapp", item_id="wa-starter", duration="year")])
    assert tx.final_amount == Decimal("1000000.00")


@pytest.mark.parametrize(
    "lines,currency,err",
    [
        ([], "idr", InvalidPricingInput),
        ([BASIC], "eur", InvalidPricingInput),
        ([WA_MONTH, service.CartLine(kind="whatsapp", item_id="wa-starter", duration="year")], "idr", InvalidPricingInput),
        ([service.CartLine(kind="bundle", item_id="x")], "idr", InvalidPricingInput),
        ([service.CartLine(kind="product", item_id="pkg-basic", quantity=0)], "idr", InvalidPricingInput),
        ([service.CartLine(kind="product", item_id="missing")], "idr", CatalogItemNotFound),
        ([service.CartLine(kind="product", item_id="pkg-pro")], "usd", CatalogItemNotFound),
    ],
)
def test_cart_validation(catalog, lines, currency, err):
    with pytest.raises(err):
        service.create_transaction(customer_id=CUSTOMER_ID, lines=lines, currency=currency, now=T0)
    assert memory_store.get_database().transactions == {}


def test_inactive_item_is_not_sellable(catalog):
    catalog.add_item("product", "pkg-old", name="Old", prices={"idr": Decimal("1")}, is_active=False)
    with pytest.raises(CatalogItemNotFound):
        _tx([service.CartLine(kind="product", item_id="pkg-old")])


def test_preview_matches_later_payment_and_writes_nothing(catalog):
    result = service.preview(
        customer_id=CUSTOMER_ID,
        lines=[BASIC],
        currency="IDR",
        voucher_code="SAVE10",
        method="manual_bank_transfer",
        now=T0,
    )
    assert result["currency"] == "idr"
    assert result["pricing"].final_amount == Decimal("98500.00")
    assert result["requires_manual_approval"] is True
    assert result["voucher_code"] == "SAVE10"
    assert memory_store.get_database().transactions == {}
    assert memory_store.get_database().voucher_usages == {}


# ---------------------------
# Payments
# ---------------------------

def test_manual_transfer_gets_unique_code(catalog, sandbox_gateway):
    tx = _tx(voucher_code="SAVE10")
    p = service.create_payment(tx.id, "manual_bank_transfer", customer_id=CUSTOMER_ID, now=T0)

    assert p.requires_manual_approval is True
    assert UNIQUE_CODE_MIN <= p.unique_code <= UNIQUE_CODE_MAX
    assert p.amount == Decimal("98500.00") + p.unique_code
    assert p.service_fee == Decimal("3500.00")
    assert p.external_id is None
    assert sandbox_gateway.created == []

    with memory_store.session() as store:
        stored_tx = store.get_transaction(tx.id)
    assert stored_tx.status == "pending"
    assert stored_tx.final_amount == Decimal("98500.00")
    assert stored_tx.discount_amount == Decimal("5000.00")


def test_colliding_manual_transfers_get_distinct_codes_then_fallback(catalog, monkeypatch):
    monkeypatch.setattr(settings, "UNIQUE_CODE_MAX_ATTEMPTS", 20000, raising=False)
    free = UNIQUE_CODE_MAX - UNIQUE_CODE_MIN + 1

    codes = []
    for i in range(1000):
        tx = _tx(now=T0 + timedelta(seconds=i))
        p = service.create_payment(tx.id, "manual_bank_transfer", now=T0 + timedelta(seconds=i))
        assert p.amount == Decimal("103500.00") + p.unique_code
        codes.append(p.unique_code)

    assert all(UNIQUE_CODE_MIN <= c <= UNIQUE_CODE_MAX for c in codes)
    assert len(set(codes[:free])) == free
    assert get_counter("billing_unique_codes_total", {"fallback": "false"}) == free
    assert get_counter("billing_unique_codes_total", {"fallback": "true"}) == 1000 - free


def test_gateway_method_creates_charge(catalog, sandbox_gateway):
    tx = _tx()
    p = service.create_payment(tx.id, "va_bca", customer_id=CUSTOMER_ID, now=T0)
    assert p.requires_manual_approval is False
    assert p.unique_code is None
    assert p.amount == Decimal("104000.00")
    assert p.external_id == f"sbx-{p.id}"
    assert p.payment_url
    assert p.expires_at == T0 + timedelta(hours=24)
    assert sandbox_gateway.created == [p.id]


def test_same_method_returns_existing_payment(catalog):
    tx = _tx()
    p1 = service.create_payment(tx.id, "va_bca", now=T0)
    p2 = service.create_payment(tx.id, "VA_BCA", now=T0 + timedelta(minutes=1))
    assert p1.id == p2.id
    assert len(memory_store.get_database().payments) == 1


def test_switching_method_supersedes_pending_payment(catalog):
    tx = _tx()
    p1 = service.create_payment(tx.id, "va_bca", now=T0)
    p2 = service.create_payment(tx.id, "manual_bank_transfer", now=T0 + timedelta(minutes=1))
    assert p2.id != p1.id

    db = memory_store.get_database()
    assert db.payments[p1.id].status == "cancelled"
    assert db.payments[p1.id].failure_reason == "superseded"
    assert db.payments[p2.id].status == "pending"


def test_payment_expiry_never_outlives_transaction(catalog):
    tx = _tx()
    late = tx.expires_at - timedelta(hours=1)
    p = service.create_payment(tx.id, "va_bca", now=late)
    assert p.expires_at == tx.expires_at


def test_gateway_failure_leaves_no_payment(catalog, sandbox_gateway):
    sandbox_gateway.fail_create = True
    tx = _tx()
    with pytest.raises(GatewayError):
        service.create_payment(tx.id, "qris", now=T0)
    assert memory_store.get_database().payments == {}
    assert memory_store.get_database().transactions[tx.id].status == "created"


def test_unknown_method_rejected(catalog):
    tx = _tx()
    with pytest.raises(InvalidPricingInput):
        service.create_payment(tx.id, "bitcoin", now=T0)


def test_other_customer_cannot_pay(catalog):
    tx = _tx()
    with pytest.raises(TransactionNotFound):
        service.create_payment(tx.id, "va_bca", customer_id=OTHER_CUSTOMER_ID, now=T0)


def test_no_payment_once_paid(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "manual_bank_transfer", now=T0)
    service.approve(p.id, admin_id=ADMIN_ID, now=T0 + timedelta(hours=1))
    with pytest.raises(TransactionNotPending):
        service.create_payment(tx.id, "va_bca", now=T0 + timedelta(hours=2))


def test_no_payment_on_expired_transaction(catalog):
    tx = _tx()
    with pytest.raises(TransactionNotPending):
        service.create_payment(tx.id, "manual_bank_transfer", now=T0 + timedelta(days=8))


# ---------------------------
# Status polling
# ---------------------------

def test_status_for_manual_transfer(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "manual_bank_transfer", now=T0)
    view = service.get_status(p.id, customer_id=CUSTOMER_ID, now=T0 + timedelta(minutes=5))

    assert view.payment.status == "pending"
    assert view.changed is False
    assert view.activation is None
    assert view.pricing["unique_code"] == p.unique_code
    assert view.pricing["payment_amount"] == p.amount
    assert view.instructions["title"] == "Bank transfer"
    assert view.instructions["steps"][0].startswith("Transfer to BCA")


def test_status_poll_picks_up_gateway_payment(catalog, sandbox_gateway, events):
    tx = _tx([BASIC, SSL])
    p = service.create_payment(tx.id, "va_bca", now=T0)
    sandbox_gateway.charge_status = "settlement"

    view = service.get_status(p.id, now=T0 + timedelta(minutes=10))
    assert view.changed is True
    assert view.payment.status == "paid"
    assert view.transaction.status == "success"
    assert view.activation.completed is True
    assert sorted(view.activation.created) == ["addon", "product"]

    names = [e for e, _ in events]
    assert names.index("payment.confirmed") < names.index("services.activated")


def test_status_expires_overdue_payment_then_repay(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "manual_bank_transfer", now=T0)
    view = service.get_status(p.id, now=T0 + timedelta(hours=25))
    assert view.payment.status == "expired"
    assert view.transaction.status == "pending"
    assert view.instructions["title"] == "Payment expired"

    p2 = service.create_payment(tx.id, "manual_bank_transfer", now=T0 + timedelta(hours=26))
    assert p2.id != p.id
    assert p2.status == "pending"


def test_status_unknown_payment(catalog):
    with pytest.raises(PaymentNotFound):
        service.get_status("does-not-exist", now=T0)


def test_status_hidden_from_other_customer(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "manual_bank_transfer", now=T0)
    with pytest.raises(TransactionNotFound):
        service.get_status(p.id, customer_id=OTHER_CUSTOMER_ID, now=T0)


# ---------------------------
# Admin approval
# ---------------------------

def test_approve_activates_and_audits(catalog):
    tx = _tx([BASIC, WA_MONTH])
    p = service.create_payment(tx.id, "manual_bank_transfer", now=T0)

    view = service.approve(p.id, admin_id=ADMIN_ID, notes="matched BCA mutation", now=T0 + timedelta(hours=1))
    assert view.changed is True
    assert view.payment.status == "paid"
    assert view.payment.reviewed_by == ADMIN_ID
    assert view.payment.paid_at == T0 + timedelta(hours=1)
    assert view.transaction.status == "success"
    assert sorted(view.activation.created) == ["product", "whatsapp"]

    again = service.approve(p.id, admin_id=ADMIN_ID, now=T0 + timedelta(hours=2))
    assert again.changed is False
    assert again.payment.paid_at == T0 + timedelta(hours=1)

    with memory_store.session() as store:
        audit = store.list_audit(p.id)
    assert [row["action"] for row in audit] == ["payment.approve"]
    assert audit[0]["actor_id"] == ADMIN_ID
    assert audit[0]["metadata"]["notes"] == "matched BCA mutation"


def test_gateway_payment_cannot_be_approved(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "va_bca", now=T0)
    with pytest.raises(IllegalPaymentTransition):
        service.approve(p.id, admin_id=ADMIN_ID, now=T0)


def test_reject_then_new_payment(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "manual_bank_transfer", now=T0)
    view = service.reject(p.id, admin_id=ADMIN_ID, reason="amount mismatch", now=T0 + timedelta(hours=1))
    assert view.payment.status == "rejected"
    assert view.payment.failure_reason == "amount mismatch"
    assert view.transaction.status == "pending"

    with pytest.raises(IllegalPaymentTransition):
        service.approve(p.id, admin_id=ADMIN_ID, now=T0 + timedelta(hours=2))

    p2 = service.create_payment(tx.id, "manual_bank_transfer", now=T0 + timedelta(hours=2))
    assert p2.status == "pending"


def test_late_approval_after_expiry_is_refused(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "manual_bank_transfer", now=T0)
    with pytest.raises(IllegalPaymentTransition):
        service.approve(p.id, admin_id=ADMIN_ID, now=T0 + timedelta(hours=30))


@pytest.fixture
def units(monkeypatch):
    """Records (outcome, payment statuses) for every store unit of work."""
    seen = []
    real_open = service.open_store

    @contextmanager
    def tracking_open():
        with real_open() as store:
            try:
                yield store
            except Exception:
                seen.append(("rolled_back", _payment_statuses()))
                raise
            seen.append(("committed", _payment_statuses()))

    monkeypatch.setattr(service, "open_store", tracking_open)
    return seen


def _payment_statuses():
    return sorted(p.status for p in memory_store.get_database().payments.values())


def test_expiry_is_committed_before_a_refused_approval(catalog, units):
    tx = _tx()
    p = service.create_payment(tx.id, "manual_bank_transfer", now=T0)
    units.clear()

    with pytest.raises(IllegalPaymentTransition):
        service.approve(p.id, admin_id=ADMIN_ID, now=T0 + timedelta(hours=30))

    outcomes = [outcome for outcome, _ in units]
    assert outcomes[-1] == "rolled_back"
    assert ("committed", ["expired"]) in units[:-1]
    assert get_counter("billing_transitions_total", {"entity": "payment", "to": "expired"}) == 1


def test_expiry_is_committed_before_a_refused_cancel(catalog, units):
    tx = _tx()
    service.create_payment(tx.id, "va_bca", now=T0)
    units.clear()

    with pytest.raises(IllegalTransactionTransition):
        service.cancel(tx.id, "too late", actor_id=CUSTOMER_ID, now=T0 + timedelta(days=8))

    assert units[-1][0] == "rolled_back"
    assert ("committed", ["expired"]) in units[:-1]
    assert memory_store.get_database().transactions[tx.id].status == "expired"


# ---------------------------
# Cancel
# ---------------------------

def test_customer_cancel_cancels_pending_payment(catalog, events):
    tx = _tx()
    p = service.create_payment(tx.id, "va_bca", now=T0)
    assert service.cancel(tx.id, "changed my mind", actor_id=CUSTOMER_ID, now=T0) is True

    db = memory_store.get_database()
    assert db.transactions[tx.id].status == "cancelled"
    assert db.transactions[tx.id].cancel_reason == "changed my mind"
    assert db.payments[p.id].status == "cancelled"
    assert db.audit_log == []
    assert events[-1][0] == "transaction.cancelled"

    # repeat is a no-op
    assert service.cancel(tx.id, None, actor_id=CUSTOMER_ID, now=T0) is True


def test_admin_cancel_is_audited(catalog):
    tx = _tx()
    service.cancel(tx.id, "fraud check", actor_id=ADMIN_ID, is_admin=True, now=T0)
    with memory_store.session() as store:
        audit = store.list_audit(tx.id)
    assert audit[0]["action"] == "transaction.cancel"
    assert audit[0]["metadata"]["reason"] == "fraud check"


def test_cannot_cancel_after_payment(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "manual_bank_transfer", now=T0)
    service.approve(p.id, admin_id=ADMIN_ID, now=T0)
    with pytest.raises(IllegalTransactionTransition):
        service.cancel(tx.id, None, actor_id=CUSTOMER_ID, now=T0)


def test_other_customer_cannot_cancel(catalog):
    tx = _tx()
    with pytest.raises(TransactionNotFound):
        service.cancel(tx.id, None, actor_id=OTHER_CUSTOMER_ID, now=T0)


# ---------------------------
# Gateway confirmations
# ---------------------------

def test_gateway_paid_applies_and_activates(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "qris", now=T0)
    result = service.apply_gateway_status(status_raw="PAID", payment_id=p.id, now=T0 + timedelta(minutes=3))
    assert result["applied"] is True
    assert result["status"] == "paid"
    assert result["transaction_status"] == "success"
    assert result["activation"]["completed"] is True

    replay = service.apply_gateway_status(status_raw="paid", external_id=p.external_id, now=T0 + timedelta(minutes=4))
    assert replay["applied"] is False
    assert replay["reason"] == "NO_CHANGE"


def test_paid_wins_over_late_expiry(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "va_bca", now=T0)
    service.apply_gateway_status(status_raw="settlement", payment_id=p.id, now=T0 + timedelta(hours=1))

    late = service.apply_gateway_status(status_raw="expire", payment_id=p.id, now=T0 + timedelta(hours=2))
    assert late["applied"] is False
    assert late["status"] == "paid"

    stats = service.sweep(now=T0 + timedelta(days=30))
    assert stats["checked"] == 0
    db = memory_store.get_database()
    assert db.payments[p.id].status == "paid"
    assert db.transactions[tx.id].status == "success"


def test_confirmation_after_expiry_is_ignored(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "va_bca", now=T0)
    result = service.apply_gateway_status(status_raw="paid", payment_id=p.id, now=T0 + timedelta(hours=25))
    assert result["ignored"] is True
    assert result["reason"] == "ILLEGAL_TRANSITION"
    assert result["status"] == "expired"


def test_gateway_updates_ignored_for_unknown_manual_or_in_flight(catalog):
    assert service.apply_gateway_status(status_raw="paid", payment_id="nope")["reason"] == "PAYMENT_NOT_FOUND"

    tx = _tx()
    manual = service.create_payment(tx.id, "manual_bank_transfer", now=T0)
    r = service.apply_gateway_status(status_raw="paid", payment_id=manual.id, now=T0)
    assert r["reason"] == "MANUAL_APPROVAL_REQUIRED"

    tx2 = _tx(customer_id=OTHER_CUSTOMER_ID)
    p = service.create_payment(tx2.id, "va_bni", now=T0)
    r = service.apply_gateway_status(status_raw="pending", payment_id=p.id, now=T0)
    assert r["reason"] == "IN_FLIGHT"
    assert memory_store.get_database().payments[p.id].status == "pending"


def test_gateway_failure_keeps_transaction_open(catalog):
    tx = _tx()
    p = service.create_payment(tx.id, "gopay", now=T0)
    r = service.apply_gateway_status(status_raw="deny", payment_id=p.id, now=T0)
    assert r["applied"] is True
    assert r["status"] == "failed"
    assert r["transaction_status"] == "pending"


# ---------------------------
# Deliveries
# ---------------------------

def test_complete_delivery_marks_pending_grants_once(catalog):
    tx = _tx([BASIC, SSL])
    p = service.create_payment(tx.id, "manual_bank_transfer", now=T0)
    service.approve(p.id, admin_id=ADMIN_ID, now=T0)

    assert service.complete_delivery(tx.id, admin_id=ADMIN_ID, now=T0 + timedelta(days=1)) == 2
    assert service.complete_delivery(tx.id, admin_id=ADMIN_ID, now=T0 + timedelta(days=2)) == 0

    view = service.get_transaction(tx.id, customer_id=CUSTOMER_ID, now=T0 + timedelta(days=2))
    assert view.grants["products"][0].status == "delivered"
    assert view.grants["addon"].status == "delivered"
    assert view.grants["whatsapp"] is None

    with memory_store.session() as store:
        assert [row["action"] for row in store.list_audit(tx.id)] == ["delivery.complete"]


# ---------------------------
# Sweep
# ---------------------------

def test_sweep_expires_payments_then_transactions(catalog, events):
    idle = _tx()
    paying = _tx(customer_id=OTHER_CUSTOMER_ID)
    p = service.create_payment(paying.id, "va_bca", now=T0)

    first = service.sweep(now=T0 + timedelta(days=2))
    assert first == {"checked": 1, "payments_expired": 1, "transactions_expired": 0, "errors": 0}

    second = service.sweep(now=T0 + timedelta(days=8))
    assert second == {"checked": 2, "payments_expired": 0, "transactions_expired": 2, "errors": 0}

    db = memory_store.get_database()
    assert db.transactions[idle.id].status == "expired"
    assert db.transactions[paying.id].status == "expired"
    assert db.payments[p.id].status == "expired"
    assert [e for e, _ in events].count("transaction.expired") == 2

    assert service.sweep(now=T0 + timedelta(days=9))["checked"] == 0


def test_sweep_respects_batch_size(catalog):
    for _ in range(3):
        _tx()
    stats = service.sweep(now=T0 + timedelta(days=8), batch_size=2)
    assert stats["checked"] == 2
    assert service.sweep(now=T0 + timedelta(days=8), batch_size=2)["checked"] == 1


def test_sweep_counts_errors_and_continues(catalog, monkeypatch):
    bad = _tx()
    good = _tx(customer_id=OTHER_CUSTOMER_ID)
    real_enforce = service.enforce

    def flaky_enforce(store, tx, payment, now):
        if tx.id == bad.id:
            raise RuntimeError("boom")
        return real_enforce(store, tx, payment, now)

    monkeypatch.setattr(service, "enforce", flaky_enforce)
    stats = service.sweep(now=T0 + timedelta(days=8))
    assert stats["errors"] == 1
    assert stats["transactions_expired"] == 1
    assert memory_store.get_database().transactions[good.id].status == "expired"


def test_notification_failure_does_not_break_operation(catalog):
    def broken_sink(event, payload):
        raise RuntimeError("sink down")

    register_sink(broken_sink)
    tx = _tx()
    assert tx.status == "created"
