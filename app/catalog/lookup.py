# app/catalog/lookup.py
from __future__ import annotations

import threading
from decimal import Decimal
from typing import Optional, Protocol

from psycopg2.extras import RealDictCursor

from app.billing.models import CatalogItem, ServiceFeeRule, Voucher


class CatalogLookup(Protocol):
    """Read-only view of packages, prices, fee rules and vouchers."""

    def get_item(self, kind: str, item_id: str) -> Optional[CatalogItem]: ...

    def get_package_price(
        self,
        item_id: str,
        currency: str,
        *,
        kind: str = "product",
        duration: Optional[str] = None,
    ) -> Optional[Decimal]: ...

    def get_service_fee_rule(self, method: str, currency: str) -> Optional[ServiceFeeRule]: ...

    def get_voucher_by_code(self, code: str) -> Optional[Voucher]: ...


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


# ==========================================================
# In-memory catalog (dev / tests)
# ==========================================================

class StaticCatalog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[tuple[str, str], CatalogItem] = {}
        self._prices: dict[tuple[str, str, str, str], Decimal] = {}
        self._fees: dict[tuple[str, str], ServiceFeeRule] = {}
        self._vouchers: dict[str, Voucher] = {}

    def add_item(
        self,
        kind: str,
        item_id: str,
        *,
        name: str | None = None,
        prices: dict[str, Decimal] | None = None,
        duration_prices: dict[tuple[str, str], Decimal] | None = None,
        is_active: bool = True,
    ) -> CatalogItem:
        item = CatalogItem(id=item_id, kind=kind, name=name or item_id, is_active=is_active)
        with self._lock:
            self._items[(kind, item_id)] = item
            for currency, amount in (prices or {}).items():
                self._prices[(kind, item_id, _norm(currency), "")] = Decimal(str(amount))
            for (currency, duration), amount in (duration_prices or {}).items():
                self._prices[(kind, item_id, _norm(currency), _norm(duration))] = Decimal(str(amount))
        return item

    def remove_item(self, kind: str, item_id: str) -> None:
        with self._lock:
            self._items.pop((kind, item_id), None)

    def add_fee_rule(self, rule: ServiceFeeRule) -> None:
        with self._lock:
            self._fees[(_norm(rule.payment_method), _norm(rule.currency))] = rule

    def add_voucher(self, voucher: Voucher) -> None:
        with self._lock:
            self._vouchers[voucher.code.strip().upper()] = voucher

    def get_item(self, kind: str, item_id: str) -> Optional[CatalogItem]:
        with self._lock:
            return self._items.get((kind, item_id))

    def get_package_price(
        self,
        item_id: str,
        currency: str,
        *,
        kind: str = "product",
        duration: Optional[str] = None,
    ) -> Optional[Decimal]:
        with self._lock:
            item = self._items.get((kind, item_id))
            if item is None or not item.is_active:
                return None
            return self._prices.get((kind, item_id, _norm(currency), _norm(duration)))

    def get_service_fee_rule(self, method: str, currency: str) -> Optional[ServiceFeeRule]:
        with self._lock:
            rule = self._fees.get((_norm(method), _norm(currency)))
        if rule is None or not rule.is_active:
            return None
        return rule

    def get_voucher_by_code(self, code: str) -> Optional[Voucher]:
        with self._lock:
            return self._vouchers.get((code or "").strip().upper())


# ==========================================================
# Postgres catalog
# ==========================================================

class PgCatalog:
    def __init__(self, conn) -> None:
        self.conn = conn

    def get_item(self, kind: str, item_id: str) -> Optional[CatalogItem]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT id, kind, name, is_active
                FROM app.catalog_items
                WHERE kind = %s AND id = %s
                """,
                (kind, item_id),
            )
            row = cur.fetchone()
        if not row:
            return None
        return CatalogItem(id=row["id"], kind=row["kind"], name=row["name"], is_active=bool(row["is_active"]))

    def get_package_price(
        self,
        item_id: str,
        currency: str,
        *,
        kind: str = "product",
        duration: Optional[str] = None,
    ) -> Optional[Decimal]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.price
                FROM app.catalog_prices p
                JOIN app.catalog_items i ON i.id = p.item_id AND i.kind = p.kind
                WHERE p.kind = %s
                  AND p.item_id = %s
                  AND p.currency = %s
                  AND p.duration = %s
                  AND i.is_active
                """,
                (kind, item_id, _norm(currency), _norm(duration)),
            )
            row = cur.fetchone()
        return Decimal(row[0]) if row else None

    def get_service_fee_rule(self, method: str, currency: str) -> Optional[ServiceFeeRule]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT payment_method, currency, name, fee_type, value, min_fee, max_fee,
                       requires_manual_approval, is_active, payment_instructions
                FROM app.service_fees
                WHERE payment_method = %s AND currency = %s AND is_active
                LIMIT 1
                """,
                (_norm(method), _norm(currency)),
            )
            row = cur.fetchone()
        if not row:
            return None
        return ServiceFeeRule(
            payment_method=row["payment_method"],
            currency=row["currency"],
            fee_type=row["fee_type"],
            value=Decimal(row["value"]),
            min_fee=Decimal(row["min_fee"]) if row["min_fee"] is not None else None,
            max_fee=Decimal(row["max_fee"]) if row["max_fee"] is not None else None,
            requires_manual_approval=bool(row["requires_manual_approval"]),
            is_active=bool(row["is_active"]),
            name=row["name"],
            payment_instructions=row["payment_instructions"],
        )

    def get_voucher_by_code(self, code: str) -> Optional[Voucher]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT id, code, name, voucher_type, value, applies_to, currency,
                       min_amount, min_discount, max_discount, max_uses,
                       allow_multiple_use_per_user, is_active, starts_at, ends_at
                FROM app.vouchers
                WHERE upper(code) = upper(%s)
                LIMIT 1
                """,
                ((code or "").strip(),),
            )
            row = cur.fetchone()
        if not row:
            return None
        return Voucher(
            id=str(row["id"]),
            code=row["code"],
            name=row["name"],
            voucher_type=row["voucher_type"],
            value=Decimal(row["value"]),
            applies_to=row["applies_to"] or "total",
            currency=row["currency"],
            min_amount=Decimal(row["min_amount"] or 0),
            min_discount=Decimal(row["min_discount"] or 0),
            max_discount=Decimal(row["max_discount"]) if row["max_discount"] is not None else None,
            max_uses=row["max_uses"],
            allow_multiple_use_per_user=bool(row["allow_multiple_use_per_user"]),
            is_active=bool(row["is_active"]),
            starts_at=row["starts_at"],
            ends_at=row["ends_at"],
        )
