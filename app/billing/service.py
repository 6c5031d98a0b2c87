# app/billing/service.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

from app.billing import vouchers
from app.billing.activation import run_activation
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
from app.billing.expiration import enforce
from app.billing.instructions import build_instructions
from app.billing.locks import retry_on_contention
from app.billing.models import (
    CURRENCIES,
    DURATIONS,
    ITEM_KINDS,
    KIND_WHATSAPP,
    MANUAL_BANK_TRANSFER,
    PAY_CANCELLED,
    PAY_PAID,
    PAY_PENDING,
    PAY_REJECTED,
    PAYMENT_METHODS,
    TX_CANCELLED,
    TX_CREATED,
    TX_IN_PROGRESS,
    TX_PENDING,
    ActivationResult,
    LineItem,
    Payment,
    Transaction,
    TransactionItem,
    transaction_type_for,
)
from app.billing.pricing import (
    allocate_unique_code,
    derive_unique_code,
    payment_amount_for,
    price,
)
from app.billing.state_machine import (
    CANCELLABLE_TRANSACTION_STATUSES,
    transition_payment,
    transition_transaction,
)
from app.billing.store import open_store
from app.gateways.base import map_gateway_status
from app.gateways.factory import get_gateway
from app.notifications.dispatcher import notify
from services.metrics import increment_transition, increment_unique_code
from settings import settings

logger = logging.getLogger("billing.service")

T = TypeVar("T")
Events = list[tuple[str, dict[str, Any]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CartLine:
    kind: str
    item_id: str
    quantity: int = 1
    duration: Optional[str] = None


@dataclass
class StatusView:
    payment: Payment
    transaction: Transaction
    pricing: dict[str, Any]
    instructions: dict[str, Any]
    activation: Optional[ActivationResult] = None
    changed: bool = False


@dataclass
class TransactionView:
    transaction: Transaction
    items: list[TransactionItem]
    payment: Optional[Payment] = None
    grants: dict[str, Any] = field(default_factory=dict)


# ==========================================================
# Plumbing
# ==========================================================

def _locked(
    transaction_id: str,
    fn: Callable[[Any, Transaction, Events], T],
    *,
    expire_first: Optional[datetime] = None,
) -> T:
    """
    Run fn(store, locked_tx, events) as one unit of work under the
    per-transaction lock. Retries LockContention; notifications go out only
    after the unit has committed.

    expire_first commits due expiry in its own unit before fn runs, so an
    operation that then raises does not roll the expiry back.
    """
    events: Events = []

    def attempt() -> T:
        events.clear()
        if expire_first is not None:
            with open_store() as store:
                tx = store.lock_transaction(transaction_id)
                if tx is None:
                    raise TransactionNotFound(f"Transaction {transaction_id} not found")
                _reconcile(store, tx, None, expire_first)
        with open_store() as store:
            tx = store.lock_transaction(transaction_id)
            if tx is None:
                raise TransactionNotFound(f"Transaction {transaction_id} not found")
            return fn(store, tx, events)

    result = retry_on_contention(
        attempt,
        attempts=settings.LOCK_RETRY_ATTEMPTS,
        backoff_ms=settings.LOCK_RETRY_BACKOFF_MS,
    )
    for event, payload in events:
        notify(event, payload)
    return result


def _assert_owner(tx: Transaction, customer_id: Optional[str]) -> None:
    # 404 rather than 403 so ids of other customers don't leak
    if customer_id is not None and tx.customer_id != str(customer_id):
        raise TransactionNotFound(f"Transaction {tx.id} not found")


def _event(tx: Transaction, payment: Optional[Payment] = None, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "transaction_id": tx.id,
        "customer_id": tx.customer_id,
        "transaction_status": tx.status,
    }
    if payment is not None:
        payload.update(
            {
                "payment_id": payment.id,
                "payment_status": payment.status,
                "amount": str(payment.amount),
                "currency": tx.currency,
            }
        )
    payload.update(extra)
    return payload


def _line_items(items: list[TransactionItem]) -> list[LineItem]:
    return [
        LineItem(
            kind=i.kind,
            item_id=i.item_id,
            quantity=i.quantity,
            unit_price=i.unit_price,
            name=i.name,
            duration=i.duration,
        )
        for i in items
    ]


def _reconcile(store, tx: Transaction, payment: Optional[Payment], now: datetime) -> tuple[Transaction, Optional[Payment]]:
    """
    Expiry check against the latest payment. Older payments are always
    terminal, so the one asked about only changes when it is the latest.
    """
    latest = store.latest_payment(tx.id)
    tx, latest, _ = enforce(store, tx, latest, now)
    if payment is None or (latest is not None and latest.id == payment.id):
        return tx, latest
    return tx, payment


def _apply_payment_status(
    store,
    tx: Transaction,
    payment: Payment,
    target: str,
    *,
    now: datetime,
    events: Events,
    **changes: Any,
) -> tuple[Transaction, Payment, bool]:
    payment, changed = transition_payment(payment, target, now=now, **changes)
    if changed:
        store.update_payment(payment)
        increment_transition("payment", payment.status)
        logger.info(
            "payment_transition payment_id=%s transaction_id=%s status=%s",
            payment.id,
            tx.id,
            payment.status,
        )

    if payment.status == PAY_PAID and tx.status in (TX_CREATED, TX_PENDING):
        tx, tx_changed = transition_transaction(tx, TX_IN_PROGRESS, now=now)
        if tx_changed:
            store.update_transaction(tx)
            increment_transition("transaction", TX_IN_PROGRESS)

    if changed:
        event = "payment.confirmed" if payment.status == PAY_PAID else f"payment.{payment.status}"
        events.append((event, _event(tx, payment)))
    return tx, payment, changed


def _maybe_activate(
    store,
    tx: Transaction,
    payment: Optional[Payment],
    *,
    now: datetime,
    events: Events,
) -> tuple[Transaction, Optional[ActivationResult]]:
    if tx.status != TX_IN_PROGRESS or payment is None or payment.status != PAY_PAID:
        return tx, None
    tx, result = run_activation(store, tx, payment, now=now, retry_failed=False)
    if result.completed and result.activated:
        events.append(("services.activated", _event(tx, payment, grants=list(result.created))))
    return tx, result


def _derived_pricing(tx: Transaction, payment: Payment) -> dict[str, Any]:
    unique_code = None
    if payment.method == MANUAL_BANK_TRANSFER:
        unique_code = derive_unique_code(payment.amount, tx.final_amount, payment.id)
    return {
        "currency": tx.currency,
        "subtotal": tx.original_amount,
        "discount_amount": tx.discount_amount,
        "service_fee_amount": tx.service_fee_amount,
        "final_amount": tx.final_amount,
        "unique_code": unique_code,
        "payment_amount": payment.amount,
    }


# ==========================================================
# Cart
# ==========================================================

def _resolve_lines(catalog, lines: list[CartLine], currency: str) -> list[LineItem]:
    if not lines:
        raise InvalidPricingInput("Cart is empty")
    if currency not in CURRENCIES:
        raise InvalidPricingInput(f"Unsupported currency: {currency}")

    whatsapp_lines = [line for line in lines if line.kind == KIND_WHATSAPP]
    if len(whatsapp_lines) > 1:
        raise InvalidPricingInput("Only one WhatsApp package per transaction")

    items: list[LineItem] = []
    for line in lines:
        if line.kind not in ITEM_KINDS:
            raise InvalidPricingInput(f"Unknown item kind: {line.kind}")
        if int(line.quantity) <= 0:
            raise InvalidPricingInput(f"Quantity must be positive for item {line.item_id}")

        duration = None
        if line.kind == KIND_WHATSAPP:
            duration = line.duration or "month"
            if duration not in DURATIONS:
                raise InvalidPricingInput(f"Unknown duration: {duration}")

        item = catalog.get_item(line.kind, line.item_id)
        if item is None or not item.is_active:
            raise CatalogItemNotFound(f"{line.kind} {line.item_id} not found")

        unit_price = catalog.get_package_price(line.item_id, currency, kind=line.kind, duration=duration)
        if unit_price is None:
            raise CatalogItemNotFound(f"{line.kind} {line.item_id} has no {currency.upper()} price")

        items.append(
            LineItem(
                kind=line.kind,
                item_id=line.item_id,
                quantity=int(line.quantity),
                unit_price=Decimal(unit_price),
                name=item.name,
                duration=duration,
            )
        )
    return items


def preview(
    *,
    customer_id: str,
    lines: list[CartLine],
    currency: str,
    voucher_code: Optional[str] = None,
    method: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Checkout preview. Same validation as create_transaction/create_payment, no writes."""
    now = now or _utcnow()
    currency = (currency or "").lower()

    with open_store() as store:
        items = _resolve_lines(store.catalog, lines, currency)
        voucher = None
        if voucher_code:
            voucher, _ = vouchers.check(
                store, voucher_code, customer_id=customer_id, items=items, currency=currency, now=now
            )
        fee_rule = store.catalog.get_service_fee_rule(method, currency) if method else None

    breakdown = price(items, currency=currency, voucher=voucher, fee_rule=fee_rule)
    return {
        "currency": currency,
        "pricing": breakdown,
        "voucher_code": voucher.code if voucher else None,
        "method": method,
        "requires_manual_approval": _requires_manual(method, fee_rule) if method else None,
        "items": items,
    }


def _requires_manual(method: Optional[str], fee_rule) -> bool:
    if fee_rule is not None:
        return bool(fee_rule.requires_manual_approval)
    return method == MANUAL_BANK_TRANSFER


# ==========================================================
# Exposed operations
# ==========================================================

def create_transaction(
    *,
    customer_id: str,
    lines: list[CartLine],
    currency: str,
    voucher_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    now = now or _utcnow()
    currency = (currency or "").lower()
    customer_id = str(customer_id)

    with open_store() as store:
        items = _resolve_lines(store.catalog, lines, currency)
        breakdown = price(items, currency=currency)

        tx = Transaction(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            currency=currency,
            type=transaction_type_for({i.kind for i in items}),
            original_amount=breakdown.subtotal,
            discount_amount=breakdown.discount_amount,
            service_fee_amount=breakdown.service_fee_amount,
            final_amount=breakdown.final_amount,
            status=TX_CREATED,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=settings.TRANSACTION_EXPIRY_HOURS),
        )

        if voucher_code:
            # fail before anything is written
            vouchers.check(store, voucher_code, customer_id=customer_id, items=items, currency=currency, now=now)

        tx_items = [
            TransactionItem(
                id=str(uuid.uuid4()),
                transaction_id=tx.id,
                kind=i.kind,
                item_id=i.item_id,
                quantity=i.quantity,
                unit_price=i.unit_price,
                name=i.name,
                duration=i.duration,
            )
            for i in items
        ]
        store.insert_transaction(tx, tx_items)

        if voucher_code:
            discount, usage = vouchers.apply(store, tx, voucher_code, items=items, now=now)
            breakdown = price(items, currency=currency, discount_override=discount)
            tx = replace(
                tx,
                discount_amount=breakdown.discount_amount,
                final_amount=breakdown.final_amount,
                voucher_id=usage.voucher_id,
                updated_at=now,
            )
            store.update_transaction(tx)

    logger.info(
        "transaction_created transaction_id=%s customer_id=%s type=%s final_amount=%s currency=%s",
        tx.id,
        tx.customer_id,
        tx.type,
        tx.final_amount,
        tx.currency,
    )
    notify("transaction.created", _event(tx))
    return tx


def get_transaction(
    transaction_id: str,
    *,
    customer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransactionView:
    now = now or _utcnow()

    def run(store, tx: Transaction, events: Events) -> TransactionView:
        _assert_owner(tx, customer_id)
        tx, payment = _reconcile(store, tx, None, now)
        addon = store.get_addon_delivery(tx.id)
        whatsapp = store.get_whatsapp_grant(tx.id)
        return TransactionView(
            transaction=tx,
            items=store.list_items(tx.id),
            payment=payment,
            grants={
                "products": store.list_product_grants(tx.id),
                "addon": addon,
                "whatsapp": whatsapp,
            },
        )

    return _locked(transaction_id, run)


def create_payment(
    transaction_id: str,
    method: str,
    *,
    customer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payment:
    now = now or _utcnow()
    method = (method or "").strip().lower()
    if method not in PAYMENT_METHODS:
        raise InvalidPricingInput(f"Unsupported payment method: {method}")

    # -- read phase (no lock) --
    with open_store() as store:
        tx = store.get_transaction(transaction_id)
        if tx is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        _assert_owner(tx, customer_id)
        if tx.status not in (TX_CREATED, TX_PENDING):
            raise TransactionNotPending(f"Transaction {tx.id} is {tx.status}")
        fee_rule = store.catalog.get_service_fee_rule(method, tx.currency)
        items = _line_items(store.list_items(tx.id))

    breakdown = price(items, currency=tx.currency, fee_rule=fee_rule, discount_override=tx.discount_amount)
    requires_manual = _requires_manual(method, fee_rule)
    payment_id = str(uuid.uuid4())

    # -- gateway call (no lock) --
    charge = None
    if not requires_manual:
        charge = get_gateway().create_charge(
            {
                "id": payment_id,
                "amount": breakdown.final_amount,
                "currency": tx.currency,
                "method": method,
                "transaction_id": tx.id,
            }
        )
        if charge.error:
            logger.warning("gateway_charge_failed transaction_id=%s method=%s error=%s", tx.id, method, charge.error)
            raise GatewayError(f"Payment gateway error: {charge.error}")

    # -- commit phase (locked) --
    def run(store, tx: Transaction, events: Events) -> Payment:
        tx, current = _reconcile(store, tx, None, now)
        if tx.status not in (TX_CREATED, TX_PENDING):
            raise TransactionNotPending(f"Transaction {tx.id} is {tx.status}")

        if current is not None and current.status == PAY_PAID:
            raise TransactionNotPending(f"Transaction {tx.id} is already paid")
        if current is not None and current.status == PAY_PENDING:
            if current.method == method:
                return current
            current, _ = transition_payment(current, PAY_CANCELLED, now=now, failure_reason="superseded")
            store.update_payment(current)
            increment_transition("payment", PAY_CANCELLED)
            logger.info("payment_superseded payment_id=%s transaction_id=%s", current.id, tx.id)

        final_amount = breakdown.final_amount
        unique_code = None
        if method == MANUAL_BANK_TRANSFER:
            used = store.used_unique_codes(
                currency=tx.currency,
                final_amount=final_amount,
                since=now - timedelta(hours=settings.UNIQUE_CODE_LOOKBACK_HOURS),
            )
            unique_code, fallback = allocate_unique_code(
                payment_id, used, max_attempts=settings.UNIQUE_CODE_MAX_ATTEMPTS
            )
            increment_unique_code(fallback)
            if fallback:
                logger.warning(
                    "unique_code_fallback payment_id=%s final_amount=%s used=%s",
                    payment_id,
                    final_amount,
                    len(used),
                )

        expires_at = now + timedelta(hours=settings.PAYMENT_EXPIRY_HOURS)
        if tx.expires_at is not None and tx.expires_at < expires_at:
            expires_at = tx.expires_at

        tx = replace(
            tx,
            discount_amount=breakdown.discount_amount,
            service_fee_amount=breakdown.service_fee_amount,
            final_amount=final_amount,
            updated_at=now,
        )
        tx, _ = transition_transaction(tx, TX_PENDING, now=now)
        store.update_transaction(tx)

        payment = Payment(
            id=payment_id,
            transaction_id=tx.id,
            method=method,
            amount=payment_amount_for(final_amount, unique_code),
            unique_code=unique_code,
            service_fee=breakdown.service_fee_amount,
            status=PAY_PENDING,
            requires_manual_approval=requires_manual,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            external_id=charge.external_id if charge else None,
            payment_url=charge.payment_url if charge else None,
        )
        store.insert_payment(payment)
        increment_transition("payment", PAY_PENDING)
        logger.info(
            "payment_created payment_id=%s transaction_id=%s method=%s amount=%s manual=%s",
            payment.id,
            tx.id,
            method,
            payment.amount,
            requires_manual,
        )
        events.append(("payment.created", _event(tx, payment)))
        return payment

    return _locked(tx.id, run, expire_first=now)


def get_status(
    payment_id: str,
    *,
    customer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StatusView:
    """
    Status poll. Reconciles expiry, applies any gateway confirmation and
    runs activation when the payment is paid.
    """
    now = now or _utcnow()

    with open_store() as store:
        payment = store.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        tx = store.get_transaction(payment.transaction_id)
        if tx is None:
            raise TransactionNotFound(f"Transaction {payment.transaction_id} not found")
        _assert_owner(tx, customer_id)
        fee_rule = store.catalog.get_service_fee_rule(payment.method, tx.currency)

    gateway_status = None
    if payment.status == PAY_PENDING and not payment.requires_manual_approval and payment.external_id:
        polled = get_gateway().get_charge_status(
            {"id": payment.id, "external_id": payment.external_id, "method": payment.method}
        )
        gateway_status = polled.status

    def run(store, tx: Transaction, events: Events) -> StatusView:
        current = store.get_payment(payment_id)
        tx, current = _reconcile(store, tx, current, now)
        changed = False

        if gateway_status in ("paid", "failed", "expired") and current.status == PAY_PENDING:
            tx, current, changed = _apply_payment_status(store, tx, current, gateway_status, now=now, events=events)
        elif current.status == PAY_PAID and tx.status in (TX_CREATED, TX_PENDING):
            tx, current, changed = _apply_payment_status(store, tx, current, PAY_PAID, now=now, events=events)

        tx, activation = _maybe_activate(store, tx, current, now=now, events=events)
        return StatusView(
            payment=current,
            transaction=tx,
            pricing=_derived_pricing(tx, current),
            instructions=build_instructions(current, currency=tx.currency, fee_rule=fee_rule),
            activation=activation,
            changed=changed,
        )

    return _locked(tx.id, run)


def cancel(
    transaction_id: str,
    reason: Optional[str],
    *,
    actor_id: str,
    is_admin: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    now = now or _utcnow()

    def run(store, tx: Transaction, events: Events) -> bool:
        if not is_admin:
            _assert_owner(tx, actor_id)
        tx, payment = _reconcile(store, tx, None, now)

        if tx.status == TX_CANCELLED:
            return True
        if tx.status not in CANCELLABLE_TRANSACTION_STATUSES:
            raise IllegalTransactionTransition(tx.status, TX_CANCELLED)

        if payment is not None and payment.status == PAY_PENDING:
            payment, _ = transition_payment(payment, PAY_CANCELLED, now=now, failure_reason=reason)
            store.update_payment(payment)
            increment_transition("payment", PAY_CANCELLED)

        tx, _ = transition_transaction(tx, TX_CANCELLED, now=now, cancel_reason=reason)
        store.update_transaction(tx)
        increment_transition("transaction", TX_CANCELLED)

        if is_admin:
            store.write_audit(
                actor_id=actor_id,
                action="transaction.cancel",
                target_id=tx.id,
                metadata={"reason": reason},
            )
        logger.info("transaction_cancelled transaction_id=%s actor=%s admin=%s", tx.id, actor_id, is_admin)
        events.append(("transaction.cancelled", _event(tx, payment, reason=reason)))
        return True

    return _locked(transaction_id, run, expire_first=now)


def _payment_transaction_id(payment_id: str) -> str:
    with open_store() as store:
        payment = store.get_payment(payment_id)
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found")
    return payment.transaction_id


def approve(
    payment_id: str,
    *,
    admin_id: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StatusView:
    now = now or _utcnow()
    transaction_id = _payment_transaction_id(payment_id)

    def run(store, tx: Transaction, events: Events) -> StatusView:
        payment = store.get_payment(payment_id)
        tx, payment = _reconcile(store, tx, payment, now)
        if not payment.requires_manual_approval:
            raise IllegalPaymentTransition(
                payment.status, PAY_PAID, "Payment is confirmed by the gateway, not by admin approval"
            )

        tx, payment, changed = _apply_payment_status(
            store, tx, payment, PAY_PAID, now=now, events=events, reviewed_by=str(admin_id), review_notes=notes
        )
        if changed:
            store.write_audit(
                actor_id=admin_id,
                action="payment.approve",
                target_id=payment.id,
                metadata={"transaction_id": tx.id, "notes": notes, "amount": str(payment.amount)},
            )

        tx, activation = _maybe_activate(store, tx, payment, now=now, events=events)
        return StatusView(
            payment=payment,
            transaction=tx,
            pricing=_derived_pricing(tx, payment),
            instructions=build_instructions(payment, currency=tx.currency),
            activation=activation,
            changed=changed,
        )

    return _locked(transaction_id, run, expire_first=now)


def reject(
    payment_id: str,
    *,
    admin_id: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StatusView:
    now = now or _utcnow()
    transaction_id = _payment_transaction_id(payment_id)

    def run(store, tx: Transaction, events: Events) -> StatusView:
        payment = store.get_payment(payment_id)
        tx, payment = _reconcile(store, tx, payment, now)
        if not payment.requires_manual_approval:
            raise IllegalPaymentTransition(
                payment.status, PAY_REJECTED, "Payment is confirmed by the gateway, not by admin approval"
            )

        tx, payment, changed = _apply_payment_status(
            store,
            tx,
            payment,
            PAY_REJECTED,
            now=now,
            events=events,
            reviewed_by=str(admin_id),
            review_notes=reason,
            failure_reason=reason,
        )
        if changed:
            store.write_audit(
                actor_id=admin_id,
                action="payment.reject",
                target_id=payment.id,
                metadata={"transaction_id": tx.id, "reason": reason},
            )
        return StatusView(
            payment=payment,
            transaction=tx,
            pricing=_derived_pricing(tx, payment),
            instructions=build_instructions(payment, currency=tx.currency),
            changed=changed,
        )

    return _locked(transaction_id, run, expire_first=now)


def activate(transaction_id: str, *, now: Optional[datetime] = None) -> ActivationResult:
    now = now or _utcnow()

    def run(store, tx: Transaction, events: Events) -> ActivationResult:
        tx, payment = _reconcile(store, tx, None, now)
        tx, result = run_activation(store, tx, payment, now=now)
        if result.completed and result.activated:
            events.append(("services.activated", _event(tx, payment, grants=list(result.created))))
        return result

    return _locked(transaction_id, run)


def apply_gateway_status(
    *,
    status_raw: str,
    payment_id: Optional[str] = None,
    external_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Gateway confirmation (webhook). Unknown payments and out-of-order
    updates are reported as ignored, never raised, so the gateway stops
    retrying.
    """
    now = now or _utcnow()
    target = map_gateway_status(status_raw)

    with open_store() as store:
        payment = store.get_payment(payment_id) if payment_id else None
        if payment is None and external_id:
            payment = store.get_payment_by_external_id(external_id)
        # some gateways echo our payment id back as their "id"
        if payment is None and external_id:
            payment = store.get_payment(external_id)

    if payment is None:
        return {"applied": False, "ignored": True, "reason": "PAYMENT_NOT_FOUND"}
    if payment.requires_manual_approval:
        return {"applied": False, "ignored": True, "reason": "MANUAL_APPROVAL_REQUIRED", "payment_id": payment.id}
    if target == "pending":
        return {"applied": False, "ignored": True, "reason": "IN_FLIGHT", "payment_id": payment.id}

    def run(store, tx: Transaction, events: Events) -> dict[str, Any]:
        current = store.get_payment(payment.id)
        tx, current = _reconcile(store, tx, current, now)
        try:
            tx, current, changed = _apply_payment_status(store, tx, current, target, now=now, events=events)
        except IllegalPaymentTransition as exc:
            logger.warning(
                "gateway_update_rejected payment_id=%s current=%s target=%s",
                current.id,
                exc.old,
                exc.new,
            )
            return {
                "applied": False,
                "ignored": True,
                "reason": "ILLEGAL_TRANSITION",
                "payment_id": current.id,
                "status": current.status,
            }

        tx, activation = _maybe_activate(store, tx, current, now=now, events=events)
        return {
            "applied": changed,
            "ignored": False,
            "reason": None if changed else "NO_CHANGE",
            "payment_id": current.id,
            "status": current.status,
            "transaction_status": tx.status,
            "activation": activation.as_dict() if activation else None,
        }

    return _locked(payment.transaction_id, run)


def complete_delivery(transaction_id: str, *, admin_id: str, now: Optional[datetime] = None) -> int:
    now = now or _utcnow()

    def run(store, tx: Transaction, events: Events) -> int:
        changed = store.mark_deliveries_delivered(tx.id, now)
        if changed:
            store.write_audit(
                actor_id=admin_id,
                action="delivery.complete",
                target_id=tx.id,
                metadata={"records": changed},
            )
            events.append(("delivery.completed", _event(tx, records=changed)))
        return changed

    return _locked(transaction_id, run)


def sweep(*, now: Optional[datetime] = None, batch_size: Optional[int] = None) -> dict[str, int]:
    """
    Periodic expiry pass. Runs the same reconcile as the inline checks,
    one transaction at a time under its own lock.
    """
    now = now or _utcnow()
    limit = int(batch_size or settings.SWEEP_BATCH_SIZE)

    with open_store() as store:
        candidates = store.expiry_candidates(now, limit=limit)

    stats = {"checked": 0, "payments_expired": 0, "transactions_expired": 0, "errors": 0}

    def run(store, tx: Transaction, events: Events) -> None:
        latest = store.latest_payment(tx.id)
        tx_after, _, plan = enforce(store, tx, latest, now)
        if plan.expire_payment:
            stats["payments_expired"] += 1
        if plan.expire_transaction:
            stats["transactions_expired"] += 1
            events.append(("transaction.expired", _event(tx_after)))

    for transaction_id in candidates:
        stats["checked"] += 1
        try:
            _locked(transaction_id, run)
        except Exception:
            # one bad row must not stop the batch
            stats["errors"] += 1
            logger.exception("sweep_failed transaction_id=%s", transaction_id)

    if stats["checked"]:
        logger.info(
            "expiry_sweep checked=%s payments_expired=%s transactions_expired=%s errors=%s",
            stats["checked"],
            stats["payments_expired"],
            stats["transactions_expired"],
            stats["errors"],
        )
    return stats
