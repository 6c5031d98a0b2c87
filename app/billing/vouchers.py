# app/billing/vouchers.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from app.billing.errors import (
    VoucherCurrencyMismatch,
    VoucherExhausted,
    VoucherExpired,
    VoucherInvalid,
)
from app.billing.models import LineItem, Transaction, Voucher, VoucherUsage
from app.billing.pricing import compute_discount, subtotal, to_money

logger = logging.getLogger("billing.vouchers")


def validate(
    voucher: Optional[Voucher],
    *,
    store,
    customer_id: str,
    items: Iterable[LineItem],
    currency: str,
    now: datetime,
) -> Decimal:
    """
    Run every voucher rule and return the discount it grants.
    Usage counts are read from the store; nothing is written.
    """
    items = list(items)

    if voucher is None:
        raise VoucherInvalid("Invalid voucher code")
    if not voucher.is_active:
        raise VoucherInvalid("Voucher is not active")
    if voucher.starts_at is not None and now < voucher.starts_at:
        raise VoucherInvalid("Voucher is not yet valid")
    if voucher.ends_at is not None and now > voucher.ends_at:
        raise VoucherExpired("Voucher has expired")
    if voucher.currency and voucher.currency.lower() != (currency or "").lower():
        raise VoucherCurrencyMismatch(
            f"Voucher is only valid for {voucher.currency.upper()} purchases"
        )

    if voucher.max_uses is not None and store.count_voucher_usages(voucher.id) >= voucher.max_uses:
        raise VoucherExhausted("Voucher usage limit reached")
    if not voucher.allow_multiple_use_per_user and store.count_voucher_usages(voucher.id, customer_id=customer_id) > 0:
        raise VoucherExhausted("Voucher already used by this customer")

    order_total = subtotal(items)
    if order_total < to_money(voucher.min_amount or 0):
        raise VoucherInvalid(f"Minimum order amount is {to_money(voucher.min_amount)}")

    discount = compute_discount(items, voucher, currency=currency)
    if discount <= 0:
        raise VoucherInvalid("Voucher does not apply to any item in this order")
    return discount


def check(store, code: str, *, customer_id: str, items: Iterable[LineItem], currency: str, now: datetime) -> tuple[Voucher, Decimal]:
    voucher = store.catalog.get_voucher_by_code(code)
    discount = validate(voucher, store=store, customer_id=customer_id, items=items, currency=currency, now=now)
    return voucher, discount


def apply(
    store,
    transaction: Transaction,
    voucher_code: str,
    *,
    items: Iterable[LineItem],
    now: datetime,
) -> tuple[Decimal, VoucherUsage]:
    """
    Record the voucher against the transaction exactly once.
    A second call for the same transaction returns the existing usage.
    """
    existing = store.get_voucher_usage(transaction.id)
    if existing is not None:
        return existing.discount_amount, existing

    voucher = store.catalog.get_voucher_by_code(voucher_code)
    if voucher is not None:
        # serialize usage counting for this voucher
        store.lock_voucher(voucher.id)

    discount = validate(
        voucher,
        store=store,
        customer_id=transaction.customer_id,
        items=items,
        currency=transaction.currency,
        now=now,
    )

    usage = VoucherUsage(
        id=str(uuid.uuid4()),
        voucher_id=voucher.id,
        transaction_id=transaction.id,
        customer_id=transaction.customer_id,
        discount_amount=discount,
        created_at=now,
    )
    store.insert_voucher_usage(usage)
    logger.info(
        "voucher_applied voucher=%s transaction_id=%s discount=%s",
        voucher.code,
        transaction.id,
        discount,
    )
    return discount, usage
