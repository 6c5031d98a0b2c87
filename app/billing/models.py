from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


CURRENCIES = ("idr", "usd")

# -----------------------
# Statuses
# -----------------------
TX_CREATED = "created"
TX_PENDING = "pending"
TX_IN_PROGRESS = "in_progress"
TX_SUCCESS = "success"
TX_FAILED = "failed"
TX_EXPIRED = "expired"
TX_CANCELLED = "cancelled"

PAY_PENDING = "pending"
PAY_PAID = "paid"
PAY_FAILED = "failed"
PAY_EXPIRED = "expired"
PAY_CANCELLED = "cancelled"
PAY_REJECTED = "rejected"

# pending/paid payments block a new payment on the same transaction
ACTIVE_PAYMENT_STATUSES = (PAY_PENDING, PAY_PAID)

ITEM_PENDING = "pending"
ITEM_SUCCESS = "success"
ITEM_FAILED = "failed"

DELIVERY_PENDING = "pending"
DELIVERY_DELIVERED = "delivered"

# -----------------------
# Line items / grants
# -----------------------
KIND_PRODUCT = "product"
KIND_ADDON = "addon"
KIND_WHATSAPP = "whatsapp"
ITEM_KINDS = (KIND_PRODUCT, KIND_ADDON, KIND_WHATSAPP)

DURATIONS = ("month", "year")

# -----------------------
# Payment methods
# -----------------------
MANUAL_BANK_TRANSFER = "manual_bank_transfer"
PAYMENT_METHODS = (
    MANUAL_BANK_TRANSFER,
    "va_bca",
    "va_bni",
    "va_bri",
    "va_mandiri",
    "va_permata",
    "va_cimb",
    "qris",
    "credit_card",
    "gopay",
    "ovo",
    "dana",
    "shopeepay",
    "paypal",
)


def transaction_type_for(kinds: set[str]) -> str:
    has_product = KIND_PRODUCT in kinds
    has_addon = KIND_ADDON in kinds
    has_whatsapp = KIND_WHATSAPP in kinds

    if has_product and has_addon and has_whatsapp:
        return "product_addon_whatsapp"
    if has_product and has_addon:
        return "product_and_addon"
    if has_product and has_whatsapp:
        return "product_and_whatsapp"
    if has_addon and has_whatsapp:
        return "addon_and_whatsapp"
    if has_whatsapp:
        return "whatsapp_service"
    if has_addon:
        return "addon"
    return "product"


@dataclass(frozen=True)
class LineItem:
    kind: str
    item_id: str
    quantity: int
    unit_price: Decimal
    name: Optional[str] = None
    duration: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class TransactionItem:
    id: str
    transaction_id: str
    kind: str
    item_id: str
    quantity: int
    unit_price: Decimal
    status: str = ITEM_PENDING
    name: Optional[str] = None
    duration: Optional[str] = None


@dataclass(frozen=True)
class Transaction:
    id: str
    customer_id: str
    currency: str
    type: str
    original_amount: Decimal
    discount_amount: Decimal
    service_fee_amount: Decimal
    final_amount: Decimal
    status: str
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    voucher_id: Optional[str] = None
    cancel_reason: Optional[str] = None


@dataclass(frozen=True)
class Payment:
    id: str
    transaction_id: str
    method: str
    amount: Decimal
    service_fee: Decimal
    status: str
    requires_manual_approval: bool
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    unique_code: Optional[int] = None
    external_id: Optional[str] = None
    payment_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class Voucher:
    id: str
    code: str
    name: str
    voucher_type: str  # "percentage" | "fixed"
    value: Decimal
    applies_to: str = "total"  # total | products | addons | whatsapp
    currency: Optional[str] = None
    min_amount: Decimal = Decimal("0")
    min_discount: Decimal = Decimal("0")
    max_discount: Optional[Decimal] = None
    max_uses: Optional[int] = None
    allow_multiple_use_per_user: bool = False
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


@dataclass(frozen=True)
class VoucherUsage:
    id: str
    voucher_id: str
    transaction_id: str
    customer_id: str
    discount_amount: Decimal
    created_at: datetime


@dataclass(frozen=True)
class ServiceFeeRule:
    payment_method: str
    currency: str
    fee_type: str  # "percentage" | "fixed"
    value: Decimal
    min_fee: Optional[Decimal] = None
    max_fee: Optional[Decimal] = None
    requires_manual_approval: bool = False
    is_active: bool = True
    name: Optional[str] = None
    payment_instructions: Optional[str] = None


@dataclass(frozen=True)
class CatalogItem:
    id: str
    kind: str
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class ProductGrant:
    id: str
    transaction_id: str
    customer_id: str
    package_id: str
    quantity: int
    status: str
    created_at: datetime
    delivered_at: Optional[datetime] = None


@dataclass(frozen=True)
class AddonDelivery:
    id: str
    transaction_id: str
    customer_id: str
    addon_details: list[dict[str, Any]]
    status: str
    created_at: datetime
    delivered_at: Optional[datetime] = None


@dataclass(frozen=True)
class WhatsappSubscription:
    id: str
    customer_id: str
    package_id: str
    activated_at: datetime
    expired_at: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class WhatsappGrant:
    id: str
    transaction_id: str
    subscription_id: str
    package_id: str
    duration: str
    action: str  # created | extended | renewed
    previous_expired_at: Optional[datetime]
    expired_at: datetime
    created_at: datetime


@dataclass
class ActivationResult:
    activated: bool
    reason: Optional[str] = None
    created: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    completed: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "activated": self.activated,
            "reason": self.reason,
            "created": list(self.created),
            "failed": list(self.failed),
            "completed": self.completed,
        }
