# app/billing/pricing.py
from __future__ import annotations

import hashlib
import random
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Iterable, Optional

from app.billing.errors import InvalidPricingInput
from app.billing.models import (
    KIND_ADDON,
    KIND_PRODUCT,
    KIND_WHATSAPP,
    LineItem,
    ServiceFeeRule,
    Voucher,
)

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")

UNIQUE_CODE_MIN = 100
UNIQUE_CODE_MAX = 999
# used when a payment id carries no digits at all
_FALLBACK_DIGITS = "123"

_APPLIES_TO_KIND = {
    "products": KIND_PRODUCT,
    "addons": KIND_ADDON,
    "whatsapp": KIND_WHATSAPP,
}


def to_money(value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidPricingInput(f"Not a decimal amount: {value!r}")
    if not amount.is_finite():
        raise InvalidPricingInput(f"Not a finite amount: {value!r}")
    return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def clamp(value: Decimal, lo: Optional[Decimal], hi: Optional[Decimal]) -> Decimal:
    if lo is not None and value < lo:
        value = lo
    if hi is not None and value > hi:
        value = hi
    return value


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: Decimal
    discount_amount: Decimal
    total_after_discount: Decimal
    service_fee_amount: Decimal
    final_amount: Decimal

    def as_dict(self) -> dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "discount_amount": str(self.discount_amount),
            "total_after_discount": str(self.total_after_discount),
            "service_fee_amount": str(self.service_fee_amount),
            "final_amount": str(self.final_amount),
        }


# ==========================================================
# Amounts
# ==========================================================

def subtotal(items: Iterable[LineItem]) -> Decimal:
    total = ZERO
    for item in items:
        if item.quantity is None or int(item.quantity) <= 0:
            raise InvalidPricingInput(f"Quantity must be positive for item {item.item_id}")
        unit = to_money(item.unit_price)
        if unit < 0:
            raise InvalidPricingInput(f"Negative unit price for item {item.item_id}")
        total += unit * int(item.quantity)

    total = to_money(total)
    if total < 0:
        raise InvalidPricingInput("Negative subtotal")
    return total


def applicable_amount(items: Iterable[LineItem], applies_to: str | None) -> Decimal:
    """
    Part of the cart a voucher can discount.
    "total" (or unknown scopes) means the whole subtotal.
    """
    items = list(items)
    kind = _APPLIES_TO_KIND.get((applies_to or "total").strip().lower())
    if kind is None:
        return subtotal(items)
    return subtotal([i for i in items if i.kind == kind])


def compute_discount(items: Iterable[LineItem], voucher: Optional[Voucher], *, currency: str) -> Decimal:
    if voucher is None:
        return ZERO
    if voucher.currency and voucher.currency.lower() != (currency or "").lower():
        return ZERO

    base = applicable_amount(items, voucher.applies_to)
    if base <= 0:
        return ZERO

    value = to_money(voucher.value)
    if voucher.voucher_type == "percentage":
        raw = base * value / Decimal(100)
    else:
        raw = value

    discount = clamp(to_money(raw), voucher.min_discount, voucher.max_discount)
    discount = min(discount, base)
    return to_money(max(discount, ZERO))


def compute_service_fee(amount: Decimal, rule: Optional[ServiceFeeRule], *, currency: str) -> Decimal:
    if rule is None or not rule.is_active:
        return ZERO
    if (rule.currency or "").lower() != (currency or "").lower():
        return ZERO

    value = to_money(rule.value)
    if rule.fee_type == "percentage":
        raw = amount * value / Decimal(100)
    else:
        raw = value

    fee = clamp(to_money(raw), rule.min_fee, rule.max_fee)
    return to_money(max(fee, ZERO))


def price(
    items: Iterable[LineItem],
    *,
    currency: str,
    voucher: Optional[Voucher] = None,
    fee_rule: Optional[ServiceFeeRule] = None,
    discount_override: Optional[Decimal] = None,
) -> PricingBreakdown:
    """
    subtotal -> discount -> fee -> final.

    discount_override carries an already-recorded voucher usage so the granted
    discount stays fixed once the usage row exists.
    """
    items = list(items)
    sub = subtotal(items)

    if discount_override is not None:
        discount = min(to_money(discount_override), sub)
    else:
        discount = compute_discount(items, voucher, currency=currency)

    after_discount = to_money(sub - discount)
    fee = compute_service_fee(after_discount, fee_rule, currency=currency)

    return PricingBreakdown(
        subtotal=sub,
        discount_amount=discount,
        total_after_discount=after_discount,
        service_fee_amount=fee,
        final_amount=to_money(after_discount + fee),
    )


# ==========================================================
# Unique code (manual bank transfer)
# ==========================================================

def fallback_unique_code(payment_id: str) -> int:
    """
    Deterministic code from the digits of the payment id.
    Best effort only: two payments can land on the same code.
    """
    digits = "".join(ch for ch in str(payment_id) if ch.isdigit()) or _FALLBACK_DIGITS
    h = int(hashlib.sha256(digits.encode("utf-8")).hexdigest(), 16)
    return UNIQUE_CODE_MIN + h % (UNIQUE_CODE_MAX - UNIQUE_CODE_MIN + 1)


def allocate_unique_code(
    payment_id: str,
    used_codes: set[int],
    *,
    max_attempts: int = 25,
    rng: Optional[random.Random] = None,
) -> tuple[int, bool]:
    """
    Returns (code, used_fallback).
    used_codes are the codes of other pending manual transfers in the same
    (currency, final_amount) bucket.
    """
    rng = rng or random.SystemRandom()
    for _ in range(max(0, int(max_attempts))):
        candidate = rng.randint(UNIQUE_CODE_MIN, UNIQUE_CODE_MAX)
        if candidate not in used_codes:
            return candidate, False
    return fallback_unique_code(payment_id), True


def derive_unique_code(payment_amount: Decimal, final_amount: Decimal, payment_id: str) -> int:
    diff = to_money(payment_amount) - to_money(final_amount)
    if diff <= 0 or diff > UNIQUE_CODE_MAX or diff != diff.to_integral_value():
        return fallback_unique_code(payment_id)
    return int(diff)


def payment_amount_for(final_amount: Decimal, unique_code: Optional[int]) -> Decimal:
    return to_money(to_money(final_amount) + (unique_code or 0))
