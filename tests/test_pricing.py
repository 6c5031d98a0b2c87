from __future__ import annotations

import random
from decimal import Decimal

import pytest

from app.billing.errors import InvalidPricingInput
from app.billing.models import LineItem, ServiceFeeRule, Voucher
from app.billing.pricing import (
    UNIQUE_CODE_MAX,
    UNIQUE_CODE_MIN,
    allocate_unique_code,
    compute_service_fee,
    derive_unique_code,
    fallback_unique_code,
    payment_amount_for,
    price,
    to_money,
)


def _line(kind="product", item_id="pkg-basic", quantity=1, unit_price="100000"):
    return LineItem(kind=kind, item_id=item_id, quantity=quantity, unit_price=Decimal(unit_price))


def _voucher(**kw):
    base = dict(id="v1", code="SAVE10", name="10%", voucher_type="percentage", value=Decimal("10"))
    base.update(kw)
    return Voucher(**base)


BANK_FEE = ServiceFeeRule(
    payment_method="manual_bank_transfer",
    currency="idr",
    fee_type="fixed",
    value=Decimal("3500"),
    requires_manual_approval=True,
)


def test_capped_percentage_voucher_then_fixed_fee():
    b = price(
        [_line()],
        currency="idr",
        voucher=_voucher(max_discount=Decimal("5000")),
        fee_rule=BANK_FEE,
    )
    assert b.subtotal == Decimal("100000.00")
    assert b.discount_amount == Decimal("5000.00")
    assert b.total_after_discount == Decimal("95000.00")
    assert b.service_fee_amount == Decimal("3500.00")
    assert b.final_amount == Decimal("98500.00")

    assert payment_amount_for(b.final_amount, 247) == Decimal("98747.00")
    assert derive_unique_code(Decimal("98747"), b.final_amount, "pay-1") == 247


def test_quantity_multiplies_unit_price():
    b = price([_line(quantity=3, unit_price="12500.50")], currency="idr")
    assert b.subtotal == Decimal("37501.50")
    assert b.final_amount == b.subtotal


def test_fixed_discount_never_exceeds_applicable_amount():
    voucher = _voucher(voucher_type="fixed", value=Decimal("250000"))
    b = price([_line()], currency="idr", voucher=voucher)
    assert b.discount_amount == Decimal("100000.00")
    assert b.final_amount == Decimal("0.00")


def test_min_discount_floor():
    voucher = _voucher(value=Decimal("1"), min_discount=Decimal("2500"))
    b = price([_line()], currency="idr", voucher=voucher)
    assert b.discount_amount == Decimal("2500.00")


def test_scoped_voucher_only_discounts_matching_kind():
    items = [_line(), _line(kind="addon", item_id="addon-ssl", unit_price="50000")]
    b = price(items, currency="idr", voucher=_voucher(applies_to="addons"))
    assert b.discount_amount == Decimal("5000.00")

    b = price([_line()], currency="idr", voucher=_voucher(applies_to="whatsapp"))
    assert b.discount_amount == Decimal("0.00")


def test_voucher_in_other_currency_gives_no_discount():
    b = price([_line()], currency="idr", voucher=_voucher(currency="usd"))
    assert b.discount_amount == Decimal("0.00")


def test_percentage_fee_respects_min_fee():
    rule = ServiceFeeRule(
        payment_method="qris",
        currency="idr",
        fee_type="percentage",
        value=Decimal("0.7"),
        min_fee=Decimal("1000"),
    )
    assert compute_service_fee(Decimal("95000"), rule, currency="idr") == Decimal("1000.00")
    assert compute_service_fee(Decimal("500000"), rule, currency="idr") == Decimal("3500.00")


def test_fee_rule_ignored_when_inactive_or_other_currency():
    inactive = ServiceFeeRule(payment_method="va_bca", currency="idr", fee_type="fixed", value=Decimal("4000"), is_active=False)
    assert compute_service_fee(Decimal("100000"), inactive, currency="idr") == Decimal("0.00")
    assert compute_service_fee(Decimal("100000"), BANK_FEE, currency="usd") == Decimal("0.00")


def test_discount_override_pins_recorded_discount():
    b = price([_line()], currency="idr", voucher=_voucher(), discount_override=Decimal("7000"))
    assert b.discount_amount == Decimal("7000.00")
    assert b.final_amount == Decimal("93000.00")


@pytest.mark.parametrize("bad", ["abc", "NaN", "Infinity", None])
def test_to_money_rejects_non_amounts(bad):
    with pytest.raises(InvalidPricingInput):
        to_money(bad)


def test_non_positive_quantity_rejected():
    with pytest.raises(InvalidPricingInput):
        price([_line(quantity=0)], currency="idr")


def test_negative_unit_price_rejected():
    with pytest.raises(InvalidPricingInput):
        price([_line(unit_price="-1")], currency="idr")


# ---------------------------
# Unique codes
# ---------------------------

def test_codes_stay_in_range_as_bucket_fills():
    rng = random.Random(42)
    free = UNIQUE_CODE_MAX - UNIQUE_CODE_MIN + 1
    used: set[int] = set()
    fallbacks = []
    for i in range(1000):
        code, fallback = allocate_unique_code(f"pay-{i}", used, max_attempts=20000, rng=rng)
        assert UNIQUE_CODE_MIN <= code <= UNIQUE_CODE_MAX
        if fallback:
            fallbacks.append(i)
        else:
            assert code not in used
        used.add(code)

    assert len(used) == free
    assert fallbacks == list(range(free, 1000))


def test_allocation_skips_used_codes():
    used = set(range(UNIQUE_CODE_MIN, UNIQUE_CODE_MAX + 1)) - {555}
    code, fallback = allocate_unique_code("pay-1", used, max_attempts=20000, rng=random.Random(7))
    assert code == 555
    assert fallback is False


def test_exhausted_bucket_falls_back_deterministically():
    used = set(range(UNIQUE_CODE_MIN, UNIQUE_CODE_MAX + 1))
    code1, fallback1 = allocate_unique_code("a1b2-c3", used, max_attempts=10)
    code2, fallback2 = allocate_unique_code("a1b2-c3", used, max_attempts=10)

    assert fallback1 is True and fallback2 is True
    assert code1 == code2 == fallback_unique_code("a1b2-c3")
    assert UNIQUE_CODE_MIN <= code1 <= UNIQUE_CODE_MAX


def test_fallback_for_id_without_digits_is_in_range():
    code = fallback_unique_code("abcdef")
    assert UNIQUE_CODE_MIN <= code <= UNIQUE_CODE_MAX


def test_derive_unique_code_falls_back_on_inconsistent_amounts():
    pid = "0c2f-77"
    assert derive_unique_code(Decimal("98500"), Decimal("98500"), pid) == fallback_unique_code(pid)
    assert derive_unique_code(Decimal("98500.50"), Decimal("98400"), pid) == fallback_unique_code(pid)
