# app/billing/expiration.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.billing.models import (
    PAY_EXPIRED,
    PAY_PAID,
    PAY_PENDING,
    TX_CREATED,
    TX_EXPIRED,
    TX_PENDING,
    Payment,
    Transaction,
)
from app.billing.state_machine import transition_payment, transition_transaction
from services.metrics import increment_transition

logger = logging.getLogger("billing.expiration")

EXPIRABLE_TRANSACTION_STATUSES = (TX_CREATED, TX_PENDING)


@dataclass(frozen=True)
class ExpiryPlan:
    expire_payment: bool = False
    expire_transaction: bool = False

    @property
    def is_noop(self) -> bool:
        return not (self.expire_payment or self.expire_transaction)


def _past(deadline: Optional[datetime], now: datetime) -> bool:
    return deadline is not None and now > deadline


def reconcile(transaction: Transaction, payment: Optional[Payment], now: datetime) -> ExpiryPlan:
    """
    Pure decision: what has to expire at `now`.
    Already-expired (or otherwise terminal) rows produce an empty plan.
    """
    expire_tx = transaction.status in EXPIRABLE_TRANSACTION_STATUSES and _past(transaction.expires_at, now)
    if payment is not None and payment.status == PAY_PAID:
        # paid before the deadline; the pending -> in_progress step is still owed
        expire_tx = False

    expire_payment = False
    if payment is not None and payment.status == PAY_PENDING:
        # a transaction expiry drags its pending payment along
        expire_payment = expire_tx or _past(payment.expires_at, now)

    return ExpiryPlan(expire_payment=expire_payment, expire_transaction=expire_tx)


def enforce(store, transaction: Transaction, payment: Optional[Payment], now: datetime) -> tuple[Transaction, Optional[Payment], ExpiryPlan]:
    """
    Apply reconcile() through the store. Caller must hold the transaction lock.
    """
    plan = reconcile(transaction, payment, now)
    if plan.is_noop:
        return transaction, payment, plan

    if plan.expire_payment and payment is not None:
        payment, changed = transition_payment(payment, PAY_EXPIRED, now=now)
        if changed:
            store.update_payment(payment)
            increment_transition("payment", PAY_EXPIRED)
            logger.info("payment_expired payment_id=%s transaction_id=%s", payment.id, transaction.id)

    if plan.expire_transaction:
        transaction, changed = transition_transaction(transaction, TX_EXPIRED, now=now)
        if changed:
            store.update_transaction(transaction)
            increment_transition("transaction", TX_EXPIRED)
            logger.info("transaction_expired transaction_id=%s", transaction.id)

    return transaction, payment, plan
