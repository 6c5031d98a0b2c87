# app/billing/memory_store.py
"""
In-process billing store for dev and tests (BILLING_STORE=memory).

Mirrors PgBillingStore method for method. Row locks are emulated with a
KeyedLockArena; every lock taken through a session is released when the
session closes. Writes are applied immediately; only a savepoint can undo
them, so a failed activation step leaves nothing behind.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator, Optional

from app.billing.locks import KeyedLockArena
from app.billing.models import (
    DELIVERY_DELIVERED,
    DELIVERY_PENDING,
    MANUAL_BANK_TRANSFER,
    PAY_PENDING,
    TX_CREATED,
    TX_PENDING,
    AddonDelivery,
    Payment,
    ProductGrant,
    Transaction,
    TransactionItem,
    VoucherUsage,
    WhatsappGrant,
    WhatsappSubscription,
)
from app.catalog.lookup import StaticCatalog
from services.observability import get_request_id
from settings import settings


_MISSING = object()


class DuplicateRow(Exception):
    """Unique constraint emulation."""


class MemoryDatabase:
    def __init__(self) -> None:
        self.guard = threading.RLock()
        self.locks = KeyedLockArena()
        self.catalog = StaticCatalog()

        self.transactions: dict[str, Transaction] = {}
        self.items: dict[str, list[TransactionItem]] = {}
        self.payments: dict[str, Payment] = {}
        self.voucher_usages: dict[str, VoucherUsage] = {}
        self.product_grants: dict[tuple[str, str], ProductGrant] = {}
        self.addon_deliveries: dict[str, AddonDelivery] = {}
        self.whatsapp_grants: dict[str, WhatsappGrant] = {}
        self.subscriptions: dict[tuple[str, str], WhatsappSubscription] = {}
        self.audit_log: list[dict[str, Any]] = []
        self.idempotency: dict[tuple[str, str, str], dict[str, Any]] = {}


_db = MemoryDatabase()


def get_database() -> MemoryDatabase:
    return _db


def reset() -> MemoryDatabase:
    global _db
    _db = MemoryDatabase()
    return _db


class MemoryBillingStore:
    def __init__(self, db: MemoryDatabase, *, lock_timeout_s: float) -> None:
        self.db = db
        self.catalog = db.catalog
        self._lock_timeout_s = lock_timeout_s
        self._held: list[str] = []
        self._undo: list[tuple[dict, Any, Any]] | None = None

    # -----------------------
    # locking
    # -----------------------
    def _hold(self, key: str) -> None:
        if key in self._held:
            return
        self.db.locks.acquire(key, timeout=self._lock_timeout_s)
        self._held.append(key)

    def close(self) -> None:
        while self._held:
            self.db.locks.release(self._held.pop())

    def _remember(self, table: dict, key: Any) -> None:
        # callers hold db.guard
        if self._undo is None:
            return
        prev = table.get(key, _MISSING)
        if isinstance(prev, list):
            prev = list(prev)
        self._undo.append((table, key, prev))

    @contextmanager
    def savepoint(self, name: str) -> Iterator[None]:
        """
        Undo log of the rows written inside the block, replayed backwards if
        the block raises. Rows touched here are covered by locks this session
        holds, so restoring them cannot clobber another session's writes.
        """
        outer = self._undo
        self._undo = []
        try:
            yield
        except Exception:
            with self.db.guard:
                for table, key, prev in reversed(self._undo):
                    if prev is _MISSING:
                        table.pop(key, None)
                    else:
                        table[key] = prev
            raise
        else:
            if outer is not None:
                outer.extend(self._undo)
        finally:
            self._undo = outer

    # -----------------------
    # transactions
    # -----------------------
    def insert_transaction(self, tx: Transaction, items: list[TransactionItem]) -> None:
        with self.db.guard:
            if tx.id in self.db.transactions:
                raise DuplicateRow(f"transaction {tx.id}")
            self.db.transactions[tx.id] = tx
            self.db.items[tx.id] = list(items)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self.db.guard:
            return self.db.transactions.get(str(transaction_id))

    def lock_transaction(self, transaction_id: str) -> Optional[Transaction]:
        transaction_id = str(transaction_id)
        if self.get_transaction(transaction_id) is None:
            return None
        self._hold(f"tx:{transaction_id}")
        return self.get_transaction(transaction_id)

    def update_transaction(self, tx: Transaction) -> None:
        with self.db.guard:
            self.db.transactions[tx.id] = tx

    def list_items(self, transaction_id: str) -> list[TransactionItem]:
        with self.db.guard:
            return list(self.db.items.get(str(transaction_id), []))

    def set_item_status(self, transaction_id: str, kind: str, status: str, *, item_id: str | None = None) -> int:
        changed = 0
        with self.db.guard:
            self._remember(self.db.items, str(transaction_id))
            rows = self.db.items.get(str(transaction_id), [])
            for idx, row in enumerate(rows):
                if row.kind != kind or (item_id is not None and row.item_id != item_id):
                    continue
                if row.status != status:
                    rows[idx] = replace(row, status=status)
                    changed += 1
        return changed

    def expiry_candidates(self, now: datetime, *, limit: int) -> list[str]:
        found: list[tuple[datetime, str]] = []
        with self.db.guard:
            for tx in self.db.transactions.values():
                if tx.status in (TX_CREATED, TX_PENDING) and tx.expires_at is not None and tx.expires_at < now:
                    found.append((tx.created_at, tx.id))
            for p in self.db.payments.values():
                if p.status == PAY_PENDING and p.expires_at is not None and p.expires_at < now:
                    tx = self.db.transactions.get(p.transaction_id)
                    if tx is not None:
                        found.append((tx.created_at, tx.id))
        ids: list[str] = []
        for _, tx_id in sorted(found):
            if tx_id not in ids:
                ids.append(tx_id)
        return ids[:limit]

    # -----------------------
    # payments
    # -----------------------
    def insert_payment(self, payment: Payment) -> None:
        with self.db.guard:
            if payment.id in self.db.payments:
                raise DuplicateRow(f"payment {payment.id}")
            self.db.payments[payment.id] = payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self.db.guard:
            return self.db.payments.get(str(payment_id))

    def get_payment_by_external_id(self, external_id: str) -> Optional[Payment]:
        with self.db.guard:
            for p in self.db.payments.values():
                if p.external_id and p.external_id == external_id:
                    return p
        return None

    def latest_payment(self, transaction_id: str) -> Optional[Payment]:
        with self.db.guard:
            rows = [p for p in self.db.payments.values() if p.transaction_id == str(transaction_id)]
        if not rows:
            return None
        # insertion order == creation order
        return rows[-1]

    def update_payment(self, payment: Payment) -> None:
        with self.db.guard:
            self.db.payments[payment.id] = payment

    def used_unique_codes(self, *, currency: str, final_amount: Decimal, since: datetime) -> set[int]:
        codes: set[int] = set()
        with self.db.guard:
            for p in self.db.payments.values():
                if p.method != MANUAL_BANK_TRANSFER or p.status != PAY_PENDING or p.unique_code is None:
                    continue
                if p.created_at < since:
                    continue
                tx = self.db.transactions.get(p.transaction_id)
                if tx is None or tx.currency != currency or tx.final_amount != final_amount:
                    continue
                codes.add(int(p.unique_code))
        return codes

    # -----------------------
    # vouchers
    # -----------------------
    def lock_voucher(self, voucher_id: str) -> None:
        self._hold(f"voucher:{voucher_id}")

    def get_voucher_usage(self, transaction_id: str) -> Optional[VoucherUsage]:
        with self.db.guard:
            return self.db.voucher_usages.get(str(transaction_id))

    def count_voucher_usages(self, voucher_id: str, *, customer_id: str | None = None) -> int:
        with self.db.guard:
            return sum(
                1
                for u in self.db.voucher_usages.values()
                if u.voucher_id == voucher_id and (customer_id is None or u.customer_id == customer_id)
            )

    def insert_voucher_usage(self, usage: VoucherUsage) -> None:
        with self.db.guard:
            if usage.transaction_id in self.db.voucher_usages:
                raise DuplicateRow(f"voucher usage for {usage.transaction_id}")
            self.db.voucher_usages[usage.transaction_id] = usage

    # -----------------------
    # grants
    # -----------------------
    def list_product_grants(self, transaction_id: str) -> list[ProductGrant]:
        with self.db.guard:
            return [g for (tx_id, _), g in self.db.product_grants.items() if tx_id == str(transaction_id)]

    def insert_product_grant(self, grant: ProductGrant) -> None:
        key = (grant.transaction_id, grant.package_id)
        with self.db.guard:
            if key in self.db.product_grants:
                raise DuplicateRow(f"product grant {key}")
            self._remember(self.db.product_grants, key)
            self.db.product_grants[key] = grant

    def get_addon_delivery(self, transaction_id: str) -> Optional[AddonDelivery]:
        with self.db.guard:
            return self.db.addon_deliveries.get(str(transaction_id))

    def insert_addon_delivery(self, delivery: AddonDelivery) -> None:
        with self.db.guard:
            if delivery.transaction_id in self.db.addon_deliveries:
                raise DuplicateRow(f"addon delivery {delivery.transaction_id}")
            self._remember(self.db.addon_deliveries, delivery.transaction_id)
            self.db.addon_deliveries[delivery.transaction_id] = delivery

    def get_whatsapp_grant(self, transaction_id: str) -> Optional[WhatsappGrant]:
        with self.db.guard:
            return self.db.whatsapp_grants.get(str(transaction_id))

    def insert_whatsapp_grant(self, grant: WhatsappGrant) -> None:
        with self.db.guard:
            if grant.transaction_id in self.db.whatsapp_grants:
                raise DuplicateRow(f"whatsapp grant {grant.transaction_id}")
            self._remember(self.db.whatsapp_grants, grant.transaction_id)
            self.db.whatsapp_grants[grant.transaction_id] = grant

    def lock_subscription(self, customer_id: str, package_id: str) -> Optional[WhatsappSubscription]:
        self._hold(f"wa:{customer_id}:{package_id}")
        with self.db.guard:
            return self.db.subscriptions.get((customer_id, package_id))

    def insert_subscription(self, sub: WhatsappSubscription) -> None:
        key = (sub.customer_id, sub.package_id)
        with self.db.guard:
            if key in self.db.subscriptions:
                raise DuplicateRow(f"subscription {key}")
            self._remember(self.db.subscriptions, key)
            self.db.subscriptions[key] = sub

    def update_subscription(self, sub: WhatsappSubscription) -> None:
        with self.db.guard:
            self._remember(self.db.subscriptions, (sub.customer_id, sub.package_id))
            self.db.subscriptions[(sub.customer_id, sub.package_id)] = sub

    def mark_deliveries_delivered(self, transaction_id: str, now: datetime) -> int:
        changed = 0
        transaction_id = str(transaction_id)
        with self.db.guard:
            for key, g in list(self.db.product_grants.items()):
                if g.transaction_id == transaction_id and g.status == DELIVERY_PENDING:
                    self.db.product_grants[key] = replace(g, status=DELIVERY_DELIVERED, delivered_at=now)
                    changed += 1
            d = self.db.addon_deliveries.get(transaction_id)
            if d is not None and d.status == DELIVERY_PENDING:
                self.db.addon_deliveries[transaction_id] = replace(d, status=DELIVERY_DELIVERED, delivered_at=now)
                changed += 1
        return changed

    # -----------------------
    # audit / idempotency
    # -----------------------
    def write_audit(self, *, actor_id: str, action: str, target_id: str | None, metadata: dict[str, Any] | None = None) -> None:
        payload = dict(metadata or {})
        request_id = get_request_id()
        if request_id and "request_id" not in payload:
            payload["request_id"] = request_id
        with self.db.guard:
            self.db.audit_log.append(
                {"actor_id": str(actor_id), "action": action, "target_id": target_id, "metadata": payload}
            )

    def list_audit(self, target_id: str) -> list[dict[str, Any]]:
        with self.db.guard:
            return [row for row in self.db.audit_log if row["target_id"] == target_id]

    def get_idempotency(self, *, user_id: str, idempotency_key: str, route_key: str) -> dict[str, Any] | None:
        with self.db.guard:
            row = self.db.idempotency.get((user_id, idempotency_key, route_key))
            return dict(row) if row else None

    def store_idempotency(
        self,
        *,
        user_id: str,
        idempotency_key: str,
        route_key: str,
        request_hash_value: str,
        response_json: dict[str, Any],
        status_code: int = 200,
    ) -> dict[str, Any]:
        key = (user_id, idempotency_key, route_key)
        with self.db.guard:
            row = self.db.idempotency.setdefault(
                key,
                {"request_hash": request_hash_value, "response_json": response_json, "status_code": int(status_code)},
            )
            return dict(row)


@contextmanager
def session() -> Iterator[MemoryBillingStore]:
    store = MemoryBillingStore(_db, lock_timeout_s=settings.LOCK_TIMEOUT_MS / 1000.0)
    try:
        yield store
    finally:
        store.close()


