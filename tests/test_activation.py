from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from app.billing import activation, memory_store, service
from app.billing.activation import ALREADY_ACTIVATED, add_duration, add_months
from app.billing.errors import ActivationPreconditionFailed
from app.billing.models import WhatsappSubscription
from services.metrics import get_counter
from tests.conftest import ADMIN_ID, CUSTOMER_ID, T0

BASIC = service.CartLine(kind="product", item_id="pkg-basic")
SSL = service.CartLine(kind="addon", item_id="addon-ssl")
WA_MONTH = service.CartLine(kind="whatsapp", item_id="wa-starter", duration="month")
WA_YEAR = service.CartLine(kind="whatsapp", item_id="wa-starter", duration="year")


def _paid_not_activated(lines, *, now=T0):
    """Transaction in_progress with a paid payment, activation not yet run."""
    tx = service.create_transaction(customer_id=CUSTOMER_ID, lines=lines, currency="idr", now=now)
    p = service.create_payment(tx.id, "manual_bank_transfer", now=now)
    db = memory_store.get_database()
    db.payments[p.id] = replace(db.payments[p.id], status="paid", paid_at=now)
    db.transactions[tx.id] = replace(db.transactions[tx.id], status="in_progress")
    return tx.id


def _buy_and_approve(lines, *, now=T0):
    tx = service.create_transaction(customer_id=CUSTOMER_ID, lines=lines, currency="idr", now=now)
    p = service.create_payment(tx.id, "manual_bank_transfer", now=now)
    return service.approve(p.id, admin_id=ADMIN_ID, now=now)


def _subscription():
    return memory_store.get_database().subscriptions[(CUSTOMER_ID, "wa-starter")]


# ---------------------------
# Calendar arithmetic
# ---------------------------

@pytest.mark.parametrize(
    "start,months,expected",
    [
        (datetime(2024, 1, 31, tzinfo=timezone.utc), 1, datetime(2024, 2, 29, tzinfo=timezone.utc)),
        (datetime(2023, 1, 31, tzinfo=timezone.utc), 1, datetime(2023, 2, 28, tzinfo=timezone.utc)),
        (datetime(2024, 11, 30, tzinfo=timezone.utc), 3, datetime(2025, 2, 28, tzinfo=timezone.utc)),
        (datetime(2024, 5, 15, 8, 30, tzinfo=timezone.utc), 1, datetime(2024, 6, 15, 8, 30, tzinfo=timezone.utc)),
    ],
)
def test_add_months_clamps_to_month_end(start, months, expected):
    assert add_months(start, months) == expected


def test_add_duration_year_from_leap_day():
    assert add_duration(datetime(2024, 2, 29, tzinfo=timezone.utc), "year") == datetime(2025, 2, 28, tzinfo=timezone.utc)


def test_add_duration_rejects_unknown():
    with pytest.raises(ValueError):
        add_duration(T0, "week")


# ---------------------------
# Activation
# ---------------------------

def test_activation_creates_every_grant_type(catalog):
    view = _buy_and_approve([BASIC, SSL, WA_MONTH])
    assert view.activation.completed is True
    assert view.activation.activated is True
    assert view.activation.created == ["product", "addon", "whatsapp"]
    assert view.transaction.status == "success"

    db = memory_store.get_database()
    tx_id = view.transaction.id
    assert len([g for g in db.product_grants.values() if g.transaction_id == tx_id]) == 1
    assert db.addon_deliveries[tx_id].addon_details[0]["addon_id"] == "addon-ssl"
    assert db.whatsapp_grants[tx_id].action == "created"
    assert _subscription().expired_at == add_months(T0, 1)
    assert {i.status for i in db.items[tx_id]} == {"success"}


def test_activation_is_idempotent(catalog):
    view = _buy_and_approve([BASIC, WA_MONTH])
    expiry = _subscription().expired_at

    again = service.activate(view.transaction.id, now=T0 + timedelta(hours=1))
    assert again.activated is False
    assert again.completed is True
    assert again.reason == ALREADY_ACTIVATED
    assert _subscription().expired_at == expiry
    assert len(memory_store.get_database().product_grants) == 1


def test_concurrent_activation_grants_once(catalog):
    tx_id = _paid_not_activated([BASIC, SSL, WA_MONTH])

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: service.activate(tx_id, now=T0), range(8)))

    assert sum(1 for r in results if r.activated) == 1
    assert all(r.completed for r in results)

    db = memory_store.get_database()
    assert len(db.product_grants) == 1
    assert len(db.addon_deliveries) == 1
    assert len(db.whatsapp_grants) == 1
    assert _subscription().expired_at == add_months(T0, 1)
    assert db.transactions[tx_id].status == "success"


def test_activation_requires_paid_in_progress(catalog):
    tx = service.create_transaction(customer_id=CUSTOMER_ID, lines=[BASIC], currency="idr", now=T0)
    with pytest.raises(ActivationPreconditionFailed):
        service.activate(tx.id, now=T0)


def test_partial_failure_resumes_only_missing_grants(catalog):
    tx_id = _paid_not_activated([BASIC, SSL, WA_MONTH])
    catalog.remove_item("whatsapp", "wa-starter")

    first = service.activate(tx_id, now=T0)
    assert first.completed is False
    assert first.created == ["product", "addon"]
    assert first.failed == ["whatsapp"]

    db = memory_store.get_database()
    assert db.transactions[tx_id].status == "in_progress"
    wa_item = [i for i in db.items[tx_id] if i.kind == "whatsapp"][0]
    assert wa_item.status == "failed"

    catalog.add_item("whatsapp", "wa-starter", name="WhatsApp Starter")
    second = service.activate(tx_id, now=T0 + timedelta(minutes=5))
    assert second.completed is True
    assert second.created == ["whatsapp"]
    assert db.transactions[tx_id].status == "success"
    assert len(db.product_grants) == 1
    assert len(db.addon_deliveries) == 1


def test_unexpected_step_error_is_isolated(catalog, monkeypatch):
    tx_id = _paid_not_activated([BASIC, SSL])

    def broken(store, tx, items, now):
        raise RuntimeError("addon backend down")

    real_step = activation._STEPS["addon"]
    monkeypatch.setitem(activation._STEPS, "addon", broken)
    result = service.activate(tx_id, now=T0)
    assert result.created == ["product"]
    assert result.failed == ["addon"]
    assert result.completed is False

    monkeypatch.setitem(activation._STEPS, "addon", real_step)
    result = service.activate(tx_id, now=T0)
    assert result.created == ["addon"]
    assert result.completed is True


# ---------------------------
# WhatsApp subscriptions
# ---------------------------

def _seed_subscription(expired_at):
    memory_store.get_database().subscriptions[(CUSTOMER_ID, "wa-starter")] = WhatsappSubscription(
        id="sub-1",
        customer_id=CUSTOMER_ID,
        package_id="wa-starter",
        activated_at=T0 - timedelta(days=60),
        expired_at=expired_at,
        created_at=T0 - timedelta(days=60),
        updated_at=T0 - timedelta(days=60),
    )


def test_active_subscription_is_extended_from_current_expiry(catalog):
    current = T0 + timedelta(days=10)
    _seed_subscription(current)

    view = _buy_and_approve([WA_MONTH])
    grant = memory_store.get_database().whatsapp_grants[view.transaction.id]
    assert grant.action == "extended"
    assert grant.previous_expired_at == current
    assert _subscription().expired_at == add_months(current, 1)
    assert _subscription().id == "sub-1"


def test_lapsed_subscription_is_renewed_from_now(catalog):
    _seed_subscription(T0 - timedelta(days=5))

    view = _buy_and_approve([WA_MONTH])
    grant = memory_store.get_database().whatsapp_grants[view.transaction.id]
    assert grant.action == "renewed"
    assert _subscription().expired_at == add_months(T0, 1)
    assert _subscription().activated_at == T0


def test_monthly_then_yearly_stack(catalog):
    _buy_and_approve([WA_MONTH])
    _buy_and_approve([WA_YEAR], now=T0 + timedelta(days=1))
    assert _subscription().expired_at == add_months(add_months(T0, 1), 12)


def test_failed_witness_insert_rolls_back_extension(catalog, monkeypatch):
    current = T0 + timedelta(days=10)
    _seed_subscription(current)
    tx_id = _paid_not_activated([WA_MONTH])

    real_insert = memory_store.MemoryBillingStore.insert_whatsapp_grant
    calls = []

    def flaky_insert(self, grant):
        calls.append(grant.transaction_id)
        if len(calls) == 1:
            raise RuntimeError("insert failed")
        return real_insert(self, grant)

    monkeypatch.setattr(memory_store.MemoryBillingStore, "insert_whatsapp_grant", flaky_insert)

    first = service.activate(tx_id, now=T0)
    assert first.failed == ["whatsapp"]
    assert _subscription().expired_at == current

    second = service.activate(tx_id, now=T0 + timedelta(minutes=1))
    assert second.completed is True
    assert second.created == ["whatsapp"]
    assert _subscription().expired_at == add_months(current, 1)
    assert memory_store.get_database().whatsapp_grants[tx_id].previous_expired_at == current


def test_failed_first_purchase_leaves_no_subscription(catalog, monkeypatch):
    tx_id = _paid_not_activated([WA_MONTH])

    def broken_insert(self, grant):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(memory_store.MemoryBillingStore, "insert_whatsapp_grant", broken_insert)
    result = service.activate(tx_id, now=T0)

    assert result.failed == ["whatsapp"]
    assert (CUSTOMER_ID, "wa-starter") not in memory_store.get_database().subscriptions


def test_status_poll_leaves_failed_grant_to_admin(catalog):
    tx_id = _paid_not_activated([BASIC, WA_MONTH])
    catalog.remove_item("whatsapp", "wa-starter")
    first = service.activate(tx_id, now=T0)
    assert first.failed == ["whatsapp"]
    assert get_counter("billing_grants_total", {"grant_type": "whatsapp", "result": "unavailable"}) == 1

    payments = memory_store.get_database().payments.values()
    payment_id = [p.id for p in payments if p.transaction_id == tx_id][0]
    for minutes in (1, 2):
        view = service.get_status(payment_id, now=T0 + timedelta(minutes=minutes))
        assert view.activation.failed == ["whatsapp"]
        assert view.activation.completed is False
        assert view.transaction.status == "in_progress"
    assert get_counter("billing_grants_total", {"grant_type": "whatsapp", "result": "unavailable"}) == 1

    catalog.add_item("whatsapp", "wa-starter", name="WhatsApp Starter")
    retried = service.activate(tx_id, now=T0 + timedelta(minutes=3))
    assert retried.completed is True
    assert retried.created == ["whatsapp"]
