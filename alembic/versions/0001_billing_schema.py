"""billing schema: catalog, transactions, payments, grants

Revision ID: 0001_billing_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_billing_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")

    # -----------------------
    # catalog
    # -----------------------
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.catalog_items (
            id text NOT NULL,
            kind text NOT NULL CHECK (kind IN ('product', 'addon', 'whatsapp')),
            name text NOT NULL,
            is_active boolean DEFAULT true NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL,
            PRIMARY KEY (kind, id)
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.catalog_prices (
            kind text NOT NULL,
            item_id text NOT NULL,
            currency text NOT NULL CHECK (currency IN ('idr', 'usd')),
            duration text DEFAULT '' NOT NULL,
            price numeric(14,2) NOT NULL CHECK (price >= 0),
            PRIMARY KEY (kind, item_id, currency, duration),
            FOREIGN KEY (kind, item_id) REFERENCES app.catalog_items (kind, id)
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.service_fees (
            id uuid DEFAULT gen_random_uuid() PRIMARY KEY,
            payment_method text NOT NULL,
            currency text NOT NULL,
            name text,
            fee_type text NOT NULL CHECK (fee_type IN ('percentage', 'fixed')),
            value numeric(14,2) NOT NULL,
            min_fee numeric(14,2),
            max_fee numeric(14,2),
            requires_manual_approval boolean DEFAULT false NOT NULL,
            is_active boolean DEFAULT true NOT NULL,
            payment_instructions text
        );
        """
    )
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_service_fees_method_currency_active "
        "ON app.service_fees (payment_method, currency) WHERE is_active;"
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.vouchers (
            id uuid DEFAULT gen_random_uuid() PRIMARY KEY,
            code text NOT NULL,
            name text NOT NULL,
            voucher_type text NOT NULL CHECK (voucher_type IN ('percentage', 'fixed')),
            value numeric(14,2) NOT NULL,
            applies_to text DEFAULT 'total' NOT NULL,
            currency text,
            min_amount numeric(14,2) DEFAULT 0 NOT NULL,
            min_discount numeric(14,2) DEFAULT 0 NOT NULL,
            max_discount numeric(14,2),
            max_uses integer,
            allow_multiple_use_per_user boolean DEFAULT false NOT NULL,
            is_active boolean DEFAULT true NOT NULL,
            starts_at timestamp with time zone,
            ends_at timestamp with time zone
        );
        """
    )
    op.execute("CREATE UNIQUE INDEX IF NOT EXISTS ux_vouchers_code ON app.vouchers (upper(code));")

    # -----------------------
    # transactions / payments
    # -----------------------
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.transactions (
            id uuid PRIMARY KEY,
            customer_id text NOT NULL,
            currency text NOT NULL,
            type text NOT NULL,
            original_amount numeric(14,2) NOT NULL,
            discount_amount numeric(14,2) DEFAULT 0 NOT NULL,
            service_fee_amount numeric(14,2) DEFAULT 0 NOT NULL,
            final_amount numeric(14,2) NOT NULL,
            status text NOT NULL CHECK (
                status IN ('created', 'pending', 'in_progress', 'success', 'failed', 'expired', 'cancelled')
            ),
            voucher_id uuid REFERENCES app.vouchers (id),
            cancel_reason text,
            created_at timestamp with time zone DEFAULT now() NOT NULL,
            updated_at timestamp with time zone DEFAULT now() NOT NULL,
            expires_at timestamp with time zone
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_transactions_customer ON app.transactions (customer_id, created_at DESC);")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_transactions_expiry ON app.transactions (expires_at) "
        "WHERE status IN ('created', 'pending');"
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.transaction_items (
            id uuid PRIMARY KEY,
            position bigserial NOT NULL,
            transaction_id uuid NOT NULL REFERENCES app.transactions (id),
            kind text NOT NULL,
            item_id text NOT NULL,
            name text,
            quantity integer NOT NULL CHECK (quantity > 0),
            unit_price numeric(14,2) NOT NULL,
            duration text,
            status text DEFAULT 'pending' NOT NULL
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_transaction_items_tx ON app.transaction_items (transaction_id, position);")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.payments (
            id uuid PRIMARY KEY,
            seq bigserial NOT NULL,
            transaction_id uuid NOT NULL REFERENCES app.transactions (id),
            method text NOT NULL,
            amount numeric(14,2) NOT NULL,
            unique_code integer CHECK (unique_code BETWEEN 100 AND 999),
            service_fee numeric(14,2) DEFAULT 0 NOT NULL,
            status text NOT NULL CHECK (
                status IN ('pending', 'paid', 'failed', 'expired', 'cancelled', 'rejected')
            ),
            requires_manual_approval boolean DEFAULT false NOT NULL,
            external_id text,
            payment_url text,
            paid_at timestamp with time zone,
            reviewed_by text,
            review_notes text,
            failure_reason text,
            created_at timestamp with time zone DEFAULT now() NOT NULL,
            updated_at timestamp with time zone DEFAULT now() NOT NULL,
            expires_at timestamp with time zone
        );
        """
    )
    # one active payment per transaction
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_payments_active_per_tx ON app.payments (transaction_id) "
        "WHERE status IN ('pending', 'paid');"
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_payments_tx ON app.payments (transaction_id, created_at DESC, seq DESC);")
    op.execute("CREATE INDEX IF NOT EXISTS ix_payments_external_id ON app.payments (external_id) WHERE external_id IS NOT NULL;")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_payments_pending_expiry ON app.payments (expires_at) WHERE status = 'pending';"
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.voucher_usages (
            id uuid PRIMARY KEY,
            voucher_id uuid NOT NULL REFERENCES app.vouchers (id),
            transaction_id uuid NOT NULL UNIQUE REFERENCES app.transactions (id),
            customer_id text NOT NULL,
            discount_amount numeric(14,2) NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_voucher_usages_voucher ON app.voucher_usages (voucher_id, customer_id);")

    # -----------------------
    # grants
    # -----------------------
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.product_grants (
            id uuid PRIMARY KEY,
            transaction_id uuid NOT NULL REFERENCES app.transactions (id),
            customer_id text NOT NULL,
            package_id text NOT NULL,
            quantity integer NOT NULL,
            status text DEFAULT 'pending' NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL,
            delivered_at timestamp with time zone,
            UNIQUE (transaction_id, package_id)
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.addon_deliveries (
            id uuid PRIMARY KEY,
            transaction_id uuid NOT NULL UNIQUE REFERENCES app.transactions (id),
            customer_id text NOT NULL,
            addon_details jsonb NOT NULL,
            status text DEFAULT 'pending' NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL,
            delivered_at timestamp with time zone
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.whatsapp_subscriptions (
            id uuid PRIMARY KEY,
            customer_id text NOT NULL,
            package_id text NOT NULL,
            activated_at timestamp with time zone NOT NULL,
            expired_at timestamp with time zone NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL,
            updated_at timestamp with time zone DEFAULT now() NOT NULL,
            UNIQUE (customer_id, package_id)
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.whatsapp_grants (
            id uuid PRIMARY KEY,
            transaction_id uuid NOT NULL UNIQUE REFERENCES app.transactions (id),
            subscription_id uuid NOT NULL REFERENCES app.whatsapp_subscriptions (id),
            package_id text NOT NULL,
            duration text NOT NULL,
            action text NOT NULL CHECK (action IN ('created', 'extended', 'renewed')),
            previous_expired_at timestamp with time zone,
            expired_at timestamp with time zone NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL
        );
        """
    )

    # -----------------------
    # idempotency / audit
    # -----------------------
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.idempotency_keys (
            id uuid DEFAULT gen_random_uuid() PRIMARY KEY,
            user_id text NOT NULL,
            idempotency_key text NOT NULL,
            route_key text NOT NULL,
            request_hash text,
            response_json jsonb NOT NULL,
            status_code integer NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL
        );
        """
    )
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_idempotency_keys_user_route "
        "ON app.idempotency_keys USING btree (user_id, idempotency_key, route_key);"
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.audit_log (
            id uuid DEFAULT gen_random_uuid() PRIMARY KEY,
            actor_user_id text NOT NULL,
            action text NOT NULL,
            target_id text,
            metadata jsonb DEFAULT '{}'::jsonb NOT NULL,
            created_at timestamp with time zone DEFAULT now() NOT NULL
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_audit_log_target ON app.audit_log (target_id, created_at);")


def downgrade() -> None:
    for table in (
        "audit_log",
        "idempotency_keys",
        "whatsapp_grants",
        "whatsapp_subscriptions",
        "addon_deliveries",
        "product_grants",
        "voucher_usages",
        "payments",
        "transaction_items",
        "transactions",
        "vouchers",
        "service_fees",
        "catalog_prices",
        "catalog_items",
    ):
        op.execute(f"DROP TABLE IF EXISTS app.{table};")
