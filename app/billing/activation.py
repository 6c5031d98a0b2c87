# app/billing/activation.py
"""
Turns a paid payment into service grants.

Each grant type is an independent check-then-create step. The presence of
the grant row is the witness that the step already ran, so a retry after a
partial failure only creates what is missing. Callers must hold the
per-transaction lock.
"""
from __future__ import annotations

import calendar
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from app.billing.errors import ActivationPreconditionFailed, LockContention
from app.billing.models import (
    DELIVERY_PENDING,
    ITEM_FAILED,
    ITEM_SUCCESS,
    KIND_ADDON,
    KIND_PRODUCT,
    KIND_WHATSAPP,
    PAY_PAID,
    TX_IN_PROGRESS,
    TX_SUCCESS,
    ActivationResult,
    AddonDelivery,
    Payment,
    ProductGrant,
    Transaction,
    TransactionItem,
    WhatsappGrant,
    WhatsappSubscription,
)
from app.billing.state_machine import transition_transaction
from services.metrics import increment_activation, increment_grant, increment_transition

logger = logging.getLogger("billing.activation")

ALREADY_ACTIVATED = "already activated"

# grant type -> line item kind
GRANT_TYPES = (
    ("product", KIND_PRODUCT),
    ("addon", KIND_ADDON),
    ("whatsapp", KIND_WHATSAPP),
)


class PackageUnavailable(Exception):
    """The purchased package is gone from the catalog. Retrying cannot help."""

    def __init__(self, item_id: str):
        super().__init__(f"Package {item_id} no longer exists")
        self.item_id = item_id


# ==========================================================
# Calendar arithmetic
# ==========================================================

def add_months(value: datetime, months: int) -> datetime:
    """Calendar month add; the day is clamped to the end of the target month (Jan 31 + 1 month = Feb 28/29)."""
    index = value.month - 1 + months
    year = value.year + index // 12
    month = index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_duration(value: datetime, duration: str, periods: int = 1) -> datetime:
    if duration == "year":
        return add_months(value, 12 * periods)
    if duration == "month":
        return add_months(value, periods)
    raise ValueError(f"Unknown duration: {duration!r}")


# ==========================================================
# Grant steps. Each returns the number of rows it created.
# ==========================================================

def _grant_products(store, tx: Transaction, items: list[TransactionItem], now: datetime) -> int:
    existing = {g.package_id for g in store.list_product_grants(tx.id)}

    quantities: dict[str, int] = {}
    for item in items:
        quantities[item.item_id] = quantities.get(item.item_id, 0) + int(item.quantity)

    created = 0
    for package_id, quantity in quantities.items():
        if package_id in existing:
            continue
        store.insert_product_grant(
            ProductGrant(
                id=str(uuid.uuid4()),
                transaction_id=tx.id,
                customer_id=tx.customer_id,
                package_id=package_id,
                quantity=quantity,
                status=DELIVERY_PENDING,
                created_at=now,
            )
        )
        created += 1
    return created


def _grant_addons(store, tx: Transaction, items: list[TransactionItem], now: datetime) -> int:
    if store.get_addon_delivery(tx.id) is not None:
        return 0

    details = [
        {
            "addon_id": item.item_id,
            "name": item.name or item.item_id,
            "quantity": int(item.quantity),
            "unit_price": str(item.unit_price),
        }
        for item in items
    ]
    store.insert_addon_delivery(
        AddonDelivery(
            id=str(uuid.uuid4()),
            transaction_id=tx.id,
            customer_id=tx.customer_id,
            addon_details=details,
            status=DELIVERY_PENDING,
            created_at=now,
        )
    )
    return 1


def _grant_whatsapp(store, tx: Transaction, items: list[TransactionItem], now: datetime) -> int:
    if store.get_whatsapp_grant(tx.id) is not None:
        return 0

    item = items[0]
    package = store.catalog.get_item(KIND_WHATSAPP, item.item_id)
    if package is None or not package.is_active:
        raise PackageUnavailable(item.item_id)

    duration = item.duration or "month"
    periods = max(1, int(item.quantity))

    sub = store.lock_subscription(tx.customer_id, item.item_id)
    previous: Optional[datetime] = None

    if sub is None:
        action = "created"
        new_expired_at = add_duration(now, duration, periods)
        sub = WhatsappSubscription(
            id=str(uuid.uuid4()),
            customer_id=tx.customer_id,
            package_id=item.item_id,
            activated_at=now,
            expired_at=new_expired_at,
            created_at=now,
            updated_at=now,
        )
        store.insert_subscription(sub)
    else:
        previous = sub.expired_at
        if sub.expired_at > now:
            # early renewal keeps the remaining time
            action = "extended"
            new_expired_at = add_duration(sub.expired_at, duration, periods)
            sub = WhatsappSubscription(
                id=sub.id,
                customer_id=sub.customer_id,
                package_id=sub.package_id,
                activated_at=sub.activated_at,
                expired_at=new_expired_at,
                created_at=sub.created_at,
                updated_at=now,
            )
        else:
            action = "renewed"
            new_expired_at = add_duration(now, duration, periods)
            sub = WhatsappSubscription(
                id=sub.id,
                customer_id=sub.customer_id,
                package_id=sub.package_id,
                activated_at=now,
                expired_at=new_expired_at,
                created_at=sub.created_at,
                updated_at=now,
            )
        store.update_subscription(sub)

    store.insert_whatsapp_grant(
        WhatsappGrant(
            id=str(uuid.uuid4()),
            transaction_id=tx.id,
            subscription_id=sub.id,
            package_id=item.item_id,
            duration=duration,
            action=action,
            previous_expired_at=previous,
            expired_at=new_expired_at,
            created_at=now,
        )
    )
    logger.info(
        "whatsapp_subscription_%s transaction_id=%s customer_id=%s package_id=%s previous=%s expired_at=%s",
        action,
        tx.id,
        tx.customer_id,
        item.item_id,
        previous.isoformat() if previous else None,
        new_expired_at.isoformat(),
    )
    return 1


_STEPS: dict[str, Callable[..., int]] = {
    "product": _grant_products,
    "addon": _grant_addons,
    "whatsapp": _grant_whatsapp,
}


# ==========================================================
# Entry point
# ==========================================================

def run_activation(
    store,
    tx: Transaction,
    payment: Optional[Payment],
    *,
    now: datetime,
    retry_failed: bool = True,
) -> tuple[Transaction, ActivationResult]:
    """
    With retry_failed=False, grant types whose items were already marked
    failed are left for an explicit activate call instead of being re-run.
    """
    if tx.status == TX_SUCCESS:
        increment_activation("noop")
        return tx, ActivationResult(activated=False, reason=ALREADY_ACTIVATED, completed=True)

    if tx.status != TX_IN_PROGRESS:
        raise ActivationPreconditionFailed(f"Transaction {tx.id} is {tx.status}, expected in_progress")
    if payment is None or payment.status != PAY_PAID:
        raise ActivationPreconditionFailed(f"Transaction {tx.id} has no paid payment")

    items = store.list_items(tx.id)
    result = ActivationResult(activated=False)

    for grant_type, kind in GRANT_TYPES:
        kind_items = [i for i in items if i.kind == kind]
        if not kind_items:
            continue
        if not retry_failed and any(i.status == ITEM_FAILED for i in kind_items):
            result.failed.append(grant_type)
            continue

        try:
            with store.savepoint(f"grant_{grant_type}"):
                created = _STEPS[grant_type](store, tx, kind_items, now)
        except PackageUnavailable as exc:
            store.set_item_status(tx.id, kind, ITEM_FAILED, item_id=exc.item_id)
            result.failed.append(grant_type)
            increment_grant(grant_type, "unavailable")
            logger.error(
                "grant_failed_permanent transaction_id=%s grant_type=%s error=%s",
                tx.id,
                grant_type,
                exc,
            )
            continue
        except LockContention:
            raise
        except Exception:
            result.failed.append(grant_type)
            increment_grant(grant_type, "error")
            logger.exception("grant_failed transaction_id=%s grant_type=%s", tx.id, grant_type)
            continue

        if created:
            result.created.append(grant_type)
            increment_grant(grant_type, "created")
        store.set_item_status(tx.id, kind, ITEM_SUCCESS)

    result.activated = bool(result.created)

    if result.failed:
        # stays in_progress for retry / manual reconciliation
        result.reason = "partial activation, pending: " + ",".join(result.failed)
        increment_activation("partial")
        logger.warning(
            "activation_incomplete transaction_id=%s created=%s failed=%s",
            tx.id,
            result.created,
            result.failed,
        )
        return tx, result

    tx, _ = transition_transaction(tx, TX_SUCCESS, now=now)
    store.update_transaction(tx)
    increment_transition("transaction", TX_SUCCESS)
    result.completed = True
    if not result.activated:
        result.reason = ALREADY_ACTIVATED
    increment_activation("completed")
    logger.info("activation_completed transaction_id=%s created=%s", tx.id, result.created)
    return tx, result
