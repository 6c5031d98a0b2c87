# app/billing/repository.py
from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator, Optional

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json, RealDictCursor

from app.billing.errors import LockContention
from app.billing.models import (
    MANUAL_BANK_TRANSFER,
    AddonDelivery,
    Payment,
    ProductGrant,
    Transaction,
    TransactionItem,
    VoucherUsage,
    WhatsappGrant,
    WhatsappSubscription,
)
from app.catalog.lookup import PgCatalog
from services.audit_log import write_audit_log
from services.idempotency import get_idempotency, store_idempotency
from settings import settings


_TX_COLUMNS = """
    id, customer_id, currency, type, original_amount, discount_amount,
    service_fee_amount, final_amount, status, created_at, updated_at,
    expires_at, voucher_id, cancel_reason
"""

_PAYMENT_COLUMNS = """
    id, transaction_id, method, amount, unique_code, service_fee, status,
    requires_manual_approval, external_id, payment_url, created_at, updated_at,
    expires_at, paid_at, reviewed_by, review_notes, failure_reason
"""


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _valid_uuid(value: Any) -> bool:
    # ids come straight from URLs and webhooks; a malformed one is "not found", not a cast error
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _row_to_transaction(row: dict) -> Transaction:
    return Transaction(
        id=str(row["id"]),
        customer_id=row["customer_id"],
        currency=row["currency"],
        type=row["type"],
        original_amount=Decimal(row["original_amount"]),
        discount_amount=Decimal(row["discount_amount"]),
        service_fee_amount=Decimal(row["service_fee_amount"]),
        final_amount=Decimal(row["final_amount"]),
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        expires_at=row["expires_at"],
        voucher_id=_opt_str(row["voucher_id"]),
        cancel_reason=row["cancel_reason"],
    )


def _row_to_payment(row: dict) -> Payment:
    return Payment(
        id=str(row["id"]),
        transaction_id=str(row["transaction_id"]),
        method=row["method"],
        amount=Decimal(row["amount"]),
        unique_code=row["unique_code"],
        service_fee=Decimal(row["service_fee"]),
        status=row["status"],
        requires_manual_approval=bool(row["requires_manual_approval"]),
        external_id=row["external_id"],
        payment_url=row["payment_url"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        expires_at=row["expires_at"],
        paid_at=row["paid_at"],
        reviewed_by=row["reviewed_by"],
        review_notes=row["review_notes"],
        failure_reason=row["failure_reason"],
    )


def _row_to_subscription(row: dict) -> WhatsappSubscription:
    return WhatsappSubscription(
        id=str(row["id"]),
        customer_id=row["customer_id"],
        package_id=row["package_id"],
        activated_at=row["activated_at"],
        expired_at=row["expired_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PgBillingStore:
    """
    Billing rows in the `app` schema. One instance per get_conn() unit of
    work; row locks live until that unit commits or rolls back.
    """

    def __init__(self, conn) -> None:
        self.conn = conn
        self.catalog = PgCatalog(conn)
        self._lock_timeout_set = False

    # ==========================================================
    # Locking
    # ==========================================================

    def _set_lock_timeout(self, cur) -> None:
        if self._lock_timeout_set:
            return
        cur.execute("SET LOCAL lock_timeout = %s", (f"{int(settings.LOCK_TIMEOUT_MS)}ms",))
        self._lock_timeout_set = True

    @contextmanager
    def savepoint(self, name: str) -> Iterator[None]:
        with self.conn.cursor() as cur:
            cur.execute(f"SAVEPOINT {name}")
        try:
            yield
        except Exception:
            with self.conn.cursor() as cur:
                cur.execute(f"ROLLBACK TO SAVEPOINT {name}")
            raise
        with self.conn.cursor() as cur:
            cur.execute(f"RELEASE SAVEPOINT {name}")

    # ==========================================================
    # Transactions
    # ==========================================================

    def insert_transaction(self, tx: Transaction, items: list[TransactionItem]) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO app.transactions (
                  id, customer_id, currency, type, original_amount, discount_amount,
                  service_fee_amount, final_amount, status, created_at, updated_at,
                  expires_at, voucher_id
                )
                VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::uuid)
                """,
                (
                    tx.id,
                    tx.customer_id,
                    tx.currency,
                    tx.type,
                    tx.original_amount,
                    tx.discount_amount,
                    tx.service_fee_amount,
                    tx.final_amount,
                    tx.status,
                    tx.created_at,
                    tx.updated_at,
                    tx.expires_at,
                    tx.voucher_id,
                ),
            )
            for item in items:
                cur.execute(
                    """
                    INSERT INTO app.transaction_items (
                      id, transaction_id, kind, item_id, name, quantity, unit_price, duration, status
                    )
                    VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        item.id,
                        item.transaction_id,
                        item.kind,
                        item.item_id,
                        item.name,
                        item.quantity,
                        item.unit_price,
                        item.duration,
                        item.status,
                    ),
                )

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        if not _valid_uuid(transaction_id):
            return None
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"SELECT {_TX_COLUMNS} FROM app.transactions WHERE id = %s::uuid",
                (str(transaction_id),),
            )
            row = cur.fetchone()
        return _row_to_transaction(row) if row else None

    def lock_transaction(self, transaction_id: str) -> Optional[Transaction]:
        if not _valid_uuid(transaction_id):
            return None
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            self._set_lock_timeout(cur)
            try:
                cur.execute(
                    f"SELECT {_TX_COLUMNS} FROM app.transactions WHERE id = %s::uuid FOR UPDATE",
                    (str(transaction_id),),
                )
            except pg_errors.LockNotAvailable as exc:
                raise LockContention(f"Transaction {transaction_id} is locked by another caller") from exc
            row = cur.fetchone()
        return _row_to_transaction(row) if row else None

    def update_transaction(self, tx: Transaction) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE app.transactions
                SET
                  status = %s,
                  discount_amount = %s,
                  service_fee_amount = %s,
                  final_amount = %s,
                  expires_at = %s,
                  voucher_id = %s::uuid,
                  cancel_reason = %s,
                  updated_at = %s
                WHERE id = %s::uuid
                """,
                (
                    tx.status,
                    tx.discount_amount,
                    tx.service_fee_amount,
                    tx.final_amount,
                    tx.expires_at,
                    tx.voucher_id,
                    tx.cancel_reason,
                    tx.updated_at,
                    tx.id,
                ),
            )

    def list_items(self, transaction_id: str) -> list[TransactionItem]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT id, transaction_id, kind, item_id, name, quantity, unit_price, duration, status
                FROM app.transaction_items
                WHERE transaction_id = %s::uuid
                ORDER BY position
                """,
                (str(transaction_id),),
            )
            rows = cur.fetchall()
        return [
            TransactionItem(
                id=str(r["id"]),
                transaction_id=str(r["transaction_id"]),
                kind=r["kind"],
                item_id=r["item_id"],
                quantity=int(r["quantity"]),
                unit_price=Decimal(r["unit_price"]),
                status=r["status"],
                name=r["name"],
                duration=r["duration"],
            )
            for r in rows
        ]

    def set_item_status(self, transaction_id: str, kind: str, status: str, *, item_id: str | None = None) -> int:
        item_filter = ""
        params: list[Any] = [status, str(transaction_id), kind, status]
        if item_id is not None:
            item_filter = "AND item_id = %s"
            params.append(item_id)
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE app.transaction_items
                SET status = %s
                WHERE transaction_id = %s::uuid
                  AND kind = %s
                  AND status <> %s
                  {item_filter}
                """,
                tuple(params),
            )
            return cur.rowcount

    def expiry_candidates(self, now: datetime, *, limit: int) -> list[str]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT id FROM (
                  SELECT t.id, t.created_at
                  FROM app.transactions t
                  WHERE t.status IN ('created', 'pending')
                    AND t.expires_at IS NOT NULL
                    AND t.expires_at < %s
                  UNION
                  SELECT t.id, t.created_at
                  FROM app.payments p
                  JOIN app.transactions t ON t.id = p.transaction_id
                  WHERE p.status = 'pending'
                    AND p.expires_at IS NOT NULL
                    AND p.expires_at < %s
                ) due
                ORDER BY created_at
                LIMIT %s
                """,
                (now, now, int(limit)),
            )
            return [str(r[0]) for r in cur.fetchall()]

    # ==========================================================
    # Payments
    # ==========================================================

    def insert_payment(self, payment: Payment) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO app.payments (
                  id, transaction_id, method, amount, unique_code, service_fee, status,
                  requires_manual_approval, external_id, payment_url, created_at, updated_at,
                  expires_at
                )
                VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    payment.id,
                    payment.transaction_id,
                    payment.method,
                    payment.amount,
                    payment.unique_code,
                    payment.service_fee,
                    payment.status,
                    payment.requires_manual_approval,
                    payment.external_id,
                    payment.payment_url,
                    payment.created_at,
                    payment.updated_at,
                    payment.expires_at,
                ),
            )

    def _fetch_payment(self, where_sql: str, params: tuple) -> Optional[Payment]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(f"SELECT {_PAYMENT_COLUMNS} FROM app.payments {where_sql}", params)
            row = cur.fetchone()
        return _row_to_payment(row) if row else None

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        if not _valid_uuid(payment_id):
            return None
        return self._fetch_payment("WHERE id = %s::uuid", (str(payment_id),))

    def get_payment_by_external_id(self, external_id: str) -> Optional[Payment]:
        return self._fetch_payment(
            "WHERE external_id = %s ORDER BY created_at DESC LIMIT 1",
            (external_id,),
        )

    def latest_payment(self, transaction_id: str) -> Optional[Payment]:
        return self._fetch_payment(
            "WHERE transaction_id = %s::uuid ORDER BY created_at DESC, seq DESC LIMIT 1",
            (str(transaction_id),),
        )

    def update_payment(self, payment: Payment) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE app.payments
                SET
                  status = %s,
                  external_id = %s,
                  payment_url = %s,
                  expires_at = %s,
                  paid_at = %s,
                  reviewed_by = %s,
                  review_notes = %s,
                  failure_reason = %s,
                  updated_at = %s
                WHERE id = %s::uuid
                """,
                (
                    payment.status,
                    payment.external_id,
                    payment.payment_url,
                    payment.expires_at,
                    payment.paid_at,
                    payment.reviewed_by,
                    payment.review_notes,
                    payment.failure_reason,
                    payment.updated_at,
                    payment.id,
                ),
            )

    def used_unique_codes(self, *, currency: str, final_amount: Decimal, since: datetime) -> set[int]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.unique_code
                FROM app.payments p
                JOIN app.transactions t ON t.id = p.transaction_id
                WHERE p.method = %s
                  AND p.status = 'pending'
                  AND p.unique_code IS NOT NULL
                  AND p.created_at >= %s
                  AND t.currency = %s
                  AND t.final_amount = %s
                """,
                (MANUAL_BANK_TRANSFER, since, currency, final_amount),
            )
            return {int(r[0]) for r in cur.fetchall()}

    # ==========================================================
    # Vouchers
    # ==========================================================

    def lock_voucher(self, voucher_id: str) -> None:
        with self.conn.cursor() as cur:
            self._set_lock_timeout(cur)
            try:
                cur.execute("SELECT id FROM app.vouchers WHERE id = %s::uuid FOR UPDATE", (voucher_id,))
            except pg_errors.LockNotAvailable as exc:
                raise LockContention(f"Voucher {voucher_id} is locked by another caller") from exc

    def get_voucher_usage(self, transaction_id: str) -> Optional[VoucherUsage]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT id, voucher_id, transaction_id, customer_id, discount_amount, created_at
                FROM app.voucher_usages
                WHERE transaction_id = %s::uuid
                """,
                (str(transaction_id),),
            )
            row = cur.fetchone()
        if not row:
            return None
        return VoucherUsage(
            id=str(row["id"]),
            voucher_id=str(row["voucher_id"]),
            transaction_id=str(row["transaction_id"]),
            customer_id=row["customer_id"],
            discount_amount=Decimal(row["discount_amount"]),
            created_at=row["created_at"],
        )

    def count_voucher_usages(self, voucher_id: str, *, customer_id: str | None = None) -> int:
        customer_filter = ""
        params: list[Any] = [voucher_id]
        if customer_id is not None:
            customer_filter = "AND customer_id = %s"
            params.append(customer_id)
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT count(*) FROM app.voucher_usages WHERE voucher_id = %s::uuid {customer_filter}",
                tuple(params),
            )
            return int(cur.fetchone()[0])

    def insert_voucher_usage(self, usage: VoucherUsage) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO app.voucher_usages (id, voucher_id, transaction_id, customer_id, discount_amount, created_at)
                VALUES (%s::uuid, %s::uuid, %s::uuid, %s, %s, %s)
                """,
                (
                    usage.id,
                    usage.voucher_id,
                    usage.transaction_id,
                    usage.customer_id,
                    usage.discount_amount,
                    usage.created_at,
                ),
            )

    # ==========================================================
    # Grants
    # ==========================================================

    def list_product_grants(self, transaction_id: str) -> list[ProductGrant]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT id, transaction_id, customer_id, package_id, quantity, status, created_at, delivered_at
                FROM app.product_grants
                WHERE transaction_id = %s::uuid
                ORDER BY created_at
                """,
                (str(transaction_id),),
            )
            rows = cur.fetchall()
        return [
            ProductGrant(
                id=str(r["id"]),
                transaction_id=str(r["transaction_id"]),
                customer_id=r["customer_id"],
                package_id=r["package_id"],
                quantity=int(r["quantity"]),
                status=r["status"],
                created_at=r["created_at"],
                delivered_at=r["delivered_at"],
            )
            for r in rows
        ]

    def insert_product_grant(self, grant: ProductGrant) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO app.product_grants (id, transaction_id, customer_id, package_id, quantity, status, created_at)
                VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, %s)
                """,
                (
                    grant.id,
                    grant.transaction_id,
                    grant.customer_id,
                    grant.package_id,
                    grant.quantity,
                    grant.status,
                    grant.created_at,
                ),
            )

    def get_addon_delivery(self, transaction_id: str) -> Optional[AddonDelivery]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT id, transaction_id, customer_id, addon_details, status, created_at, delivered_at
                FROM app.addon_deliveries
                WHERE transaction_id = %s::uuid
                """,
                (str(transaction_id),),
            )
            row = cur.fetchone()
        if not row:
            return None
        return AddonDelivery(
            id=str(row["id"]),
            transaction_id=str(row["transaction_id"]),
            customer_id=row["customer_id"],
            addon_details=list(row["addon_details"] or []),
            status=row["status"],
            created_at=row["created_at"],
            delivered_at=row["delivered_at"],
        )

    def insert_addon_delivery(self, delivery: AddonDelivery) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO app.addon_deliveries (id, transaction_id, customer_id, addon_details, status, created_at)
                VALUES (%s::uuid, %s::uuid, %s, %s::jsonb, %s, %s)
                """,
                (
                    delivery.id,
                    delivery.transaction_id,
                    delivery.customer_id,
                    Json(delivery.addon_details),
                    delivery.status,
                    delivery.created_at,
                ),
            )

    def get_whatsapp_grant(self, transaction_id: str) -> Optional[WhatsappGrant]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT id, transaction_id, subscription_id, package_id, duration, action,
                       previous_expired_at, expired_at, created_at
                FROM app.whatsapp_grants
                WHERE transaction_id = %s::uuid
                """,
                (str(transaction_id),),
            )
            row = cur.fetchone()
        if not row:
            return None
        return WhatsappGrant(
            id=str(row["id"]),
            transaction_id=str(row["transaction_id"]),
            subscription_id=str(row["subscription_id"]),
            package_id=row["package_id"],
            duration=row["duration"],
            action=row["action"],
            previous_expired_at=row["previous_expired_at"],
            expired_at=row["expired_at"],
            created_at=row["created_at"],
        )

    def insert_whatsapp_grant(self, grant: WhatsappGrant) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO app.whatsapp_grants (
                  id, transaction_id, subscription_id, package_id, duration, action,
                  previous_expired_at, expired_at, created_at
                )
                VALUES (%s::uuid, %s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s)
                """,
                (
                    grant.id,
                    grant.transaction_id,
                    grant.subscription_id,
                    grant.package_id,
                    grant.duration,
                    grant.action,
                    grant.previous_expired_at,
                    grant.expired_at,
                    grant.created_at,
                ),
            )

    def lock_subscription(self, customer_id: str, package_id: str) -> Optional[WhatsappSubscription]:
        """
        The (customer, package) row may not exist yet, so serialize on an
        advisory lock first and only then read it.
        """
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            self._set_lock_timeout(cur)
            try:
                cur.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (f"whatsapp:{customer_id}:{package_id}",),
                )
            except pg_errors.LockNotAvailable as exc:
                raise LockContention(f"Subscription {customer_id}/{package_id} is locked") from exc
            cur.execute(
                """
                SELECT id, customer_id, package_id, activated_at, expired_at, created_at, updated_at
                FROM app.whatsapp_subscriptions
                WHERE customer_id = %s AND package_id = %s
                FOR UPDATE
                """,
                (customer_id, package_id),
            )
            row = cur.fetchone()
        return _row_to_subscription(row) if row else None

    def insert_subscription(self, sub: WhatsappSubscription) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO app.whatsapp_subscriptions (
                  id, customer_id, package_id, activated_at, expired_at, created_at, updated_at
                )
                VALUES (%s::uuid, %s, %s, %s, %s, %s, %s)
                """,
                (
                    sub.id,
                    sub.customer_id,
                    sub.package_id,
                    sub.activated_at,
                    sub.expired_at,
                    sub.created_at,
                    sub.updated_at,
                ),
            )

    def update_subscription(self, sub: WhatsappSubscription) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE app.whatsapp_subscriptions
                SET activated_at = %s, expired_at = %s, updated_at = %s
                WHERE id = %s::uuid
                """,
                (sub.activated_at, sub.expired_at, sub.updated_at, sub.id),
            )

    def mark_deliveries_delivered(self, transaction_id: str, now: datetime) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE app.product_grants
                SET status = 'delivered', delivered_at = %s
                WHERE transaction_id = %s::uuid AND status = 'pending'
                """,
                (now, str(transaction_id)),
            )
            changed = cur.rowcount
            cur.execute(
                """
                UPDATE app.addon_deliveries
                SET status = 'delivered', delivered_at = %s
                WHERE transaction_id = %s::uuid AND status = 'pending'
                """,
                (now, str(transaction_id)),
            )
            return changed + cur.rowcount

    # ==========================================================
    # Audit / idempotency
    # ==========================================================

    def write_audit(self, *, actor_id: str, action: str, target_id: str | None, metadata: dict[str, Any] | None = None) -> None:
        write_audit_log(self.conn, actor_user_id=actor_id, action=action, target_id=target_id, metadata=metadata)

    def list_audit(self, target_id: str) -> list[dict[str, Any]]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT actor_user_id AS actor_id, action, target_id, metadata
                FROM app.audit_log
                WHERE target_id = %s
                ORDER BY created_at
                """,
                (target_id,),
            )
            return [dict(r) for r in cur.fetchall()]

    def get_idempotency(self, *, user_id: str, idempotency_key: str, route_key: str) -> dict[str, Any] | None:
        return get_idempotency(self.conn, user_id=user_id, idempotency_key=idempotency_key, route_key=route_key)

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
        return store_idempotency(
            self.conn,
            user_id=user_id,
            idempotency_key=idempotency_key,
            route_key=route_key,
            request_hash_value=request_hash_value,
            response_json=response_json,
            status_code=status_code,
        )
