# schemas.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

ItemKind = Literal["product", "addon", "whatsapp"]
Duration = Literal["month", "year"]


# -------- CHECKOUT --------
class CartLineIn(BaseModel):
    kind: ItemKind
    item_id: str = Field(min_length=1, max_length=100)
    quantity: int = Field(default=1, gt=0, le=1000)
    duration: Optional[Duration] = None


class CheckoutRequest(BaseModel):
    currency: str = Field(pattern="^(idr|usd|IDR|USD)$")
    items: List[CartLineIn] = Field(min_length=1)
    voucher_code: Optional[str] = Field(default=None, max_length=64)


class PreviewRequest(CheckoutRequest):
    method: Optional[str] = None


class PricingOut(BaseModel):
    subtotal: Decimal
    discount_amount: Decimal
    total_after_discount: Decimal
    service_fee_amount: Decimal
    final_amount: Decimal


class LineOut(BaseModel):
    kind: str
    item_id: str
    name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    duration: Optional[str] = None
    status: Optional[str] = None


class PreviewResponse(BaseModel):
    currency: str
    items: List[LineOut]
    pricing: PricingOut
    voucher_code: Optional[str] = None
    method: Optional[str] = None
    requires_manual_approval: Optional[bool] = None


# -------- TRANSACTIONS --------
class TransactionOut(BaseModel):
    id: str
    customer_id: str
    currency: str
    type: str
    status: str
    original_amount: Decimal
    discount_amount: Decimal
    service_fee_amount: Decimal
    final_amount: Decimal
    voucher_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None


class PaymentOut(BaseModel):
    id: str
    transaction_id: str
    method: str
    amount: Decimal
    service_fee: Decimal
    unique_code: Optional[int] = None
    status: str
    requires_manual_approval: bool
    external_id: Optional[str] = None
    payment_url: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class TransactionDetailResponse(BaseModel):
    transaction: TransactionOut
    items: List[LineOut]
    payment: Optional[PaymentOut] = None
    grants: Dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CancelResponse(BaseModel):
    transaction_id: str
    cancelled: bool


# -------- PAYMENTS --------
class PaymentCreateRequest(BaseModel):
    method: str = Field(min_length=2, max_length=40)


class ActivationOut(BaseModel):
    activated: bool
    reason: Optional[str] = None
    created: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    completed: bool = False


class StatusPricingOut(BaseModel):
    currency: str
    subtotal: Decimal
    discount_amount: Decimal
    service_fee_amount: Decimal
    final_amount: Decimal
    unique_code: Optional[int] = None
    payment_amount: Decimal


class PaymentStatusResponse(BaseModel):
    payment: PaymentOut
    transaction: TransactionOut
    pricing: StatusPricingOut
    instructions: Dict[str, Any]
    activation: Optional[ActivationOut] = None
    changed: bool = False


# -------- ADMIN --------
class ApproveRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=1000)


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class DeliveryCompleteResponse(BaseModel):
    transaction_id: str
    records_updated: int


# -------- WEBHOOKS / CRON --------
class GatewayWebhookResponse(BaseModel):
    ok: bool = True
    applied: bool
    ignored: bool = False
    reason: Optional[str] = None
    payment_id: Optional[str] = None
    status: Optional[str] = None


class SweepResponse(BaseModel):
    checked: int
    payments_expired: int
    transactions_expired: int
    errors: int
