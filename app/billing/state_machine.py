# app/billing/state_machine.py
from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

from app.billing.errors import IllegalPaymentTransition, IllegalTransactionTransition
from app.billing.models import (
    PAY_CANCELLED,
    PAY_EXPIRED,
    PAY_FAILED,
    PAY_PAID,
    PAY_PENDING,
    PAY_REJECTED,
    TX_CANCELLED,
    TX_CREATED,
    TX_EXPIRED,
    TX_FAILED,
    TX_IN_PROGRESS,
    TX_PENDING,
    TX_SUCCESS,
    Payment,
    Transaction,
)


TRANSACTION_ALLOWED = {
    TX_CREATED: {TX_PENDING, TX_CANCELLED, TX_EXPIRED},
    TX_PENDING: {TX_IN_PROGRESS, TX_FAILED, TX_EXPIRED, TX_CANCELLED},
    TX_IN_PROGRESS: {TX_SUCCESS, TX_FAILED, TX_EXPIRED, TX_CANCELLED},
    TX_SUCCESS: set(),
    TX_FAILED: set(),
    TX_EXPIRED: set(),
    TX_CANCELLED: set(),
}

TRANSACTION_TERMINAL = frozenset(s for s, targets in TRANSACTION_ALLOWED.items() if not targets)

# user/admin cancel is narrower than the table: never from in_progress
CANCELLABLE_TRANSACTION_STATUSES = frozenset({TX_CREATED, TX_PENDING})

PAYMENT_ALLOWED = {
    PAY_PENDING: {PAY_PAID, PAY_FAILED, PAY_EXPIRED, PAY_CANCELLED, PAY_REJECTED},
    PAY_PAID: set(),
    PAY_FAILED: set(),
    PAY_EXPIRED: set(),
    PAY_CANCELLED: set(),
    PAY_REJECTED: set(),
}

PAYMENT_TERMINAL = frozenset(s for s, targets in PAYMENT_ALLOWED.items() if not targets)


def assert_transaction_transition(old: str, new: str) -> None:
    if new not in TRANSACTION_ALLOWED.get(old, set()):
        raise IllegalTransactionTransition(old, new)


def assert_payment_transition(old: str, new: str) -> None:
    if new not in PAYMENT_ALLOWED.get(old, set()):
        raise IllegalPaymentTransition(old, new)


def transition_transaction(
    tx: Transaction,
    new_status: str,
    *,
    now: datetime,
    **changes: Any,
) -> tuple[Transaction, bool]:
    """
    Returns (transaction, changed).
    Re-applying the current status is an idempotent no-op, not an error.
    """
    if tx.status == new_status:
        return tx, False
    assert_transaction_transition(tx.status, new_status)
    return replace(tx, status=new_status, updated_at=now, **changes), True


def transition_payment(
    payment: Payment,
    new_status: str,
    *,
    now: datetime,
    **changes: Any,
) -> tuple[Payment, bool]:
    """
    Returns (payment, changed).

    A paid payment is returned unchanged whatever the requested target,
    so a late expiry or failure can never overwrite it.
    """
    if payment.status == PAY_PAID:
        return payment, False
    if payment.status == new_status:
        return payment, False
    assert_payment_transition(payment.status, new_status)
    if new_status == PAY_PAID and "paid_at" not in changes:
        changes["paid_at"] = now
    return replace(payment, status=new_status, updated_at=now, **changes), True
