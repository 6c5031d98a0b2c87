# app/billing/errors.py
from __future__ import annotations


class BillingError(Exception):
    """Base for every engine error. `code` is stable and mapped to HTTP in services/http_errors.py."""

    code = "BILLING_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


# -----------------------
# Pricing / vouchers (user-correctable)
# -----------------------
class InvalidPricingInput(BillingError):
    code = "INVALID_PRICING_INPUT"


class VoucherInvalid(BillingError):
    code = "VOUCHER_INVALID"


class VoucherExpired(BillingError):
    code = "VOUCHER_EXPIRED"


class VoucherExhausted(BillingError):
    code = "VOUCHER_EXHAUSTED"


class VoucherCurrencyMismatch(BillingError):
    code = "VOUCHER_CURRENCY_MISMATCH"


class CatalogItemNotFound(BillingError):
    code = "CATALOG_ITEM_NOT_FOUND"


# -----------------------
# Lifecycle
# -----------------------
class IllegalTransactionTransition(BillingError):
    code = "ILLEGAL_TRANSACTION_TRANSITION"

    def __init__(self, old: str, new: str, message: str | None = None):
        super().__init__(message or f"Illegal transaction transition: {old} -> {new}")
        self.old = old
        self.new = new


class IllegalPaymentTransition(BillingError):
    code = "ILLEGAL_PAYMENT_TRANSITION"

    def __init__(self, old: str, new: str, message: str | None = None):
        super().__init__(message or f"Illegal payment transition: {old} -> {new}")
        self.old = old
        self.new = new


class TransactionNotPending(BillingError):
    code = "TRANSACTION_NOT_PENDING"


class ActivationPreconditionFailed(BillingError):
    code = "ACTIVATION_PRECONDITION_FAILED"


class TransactionNotFound(BillingError):
    code = "TRANSACTION_NOT_FOUND"


class PaymentNotFound(BillingError):
    code = "PAYMENT_NOT_FOUND"


# -----------------------
# Transient
# -----------------------
class LockContention(BillingError):
    """Another caller holds the per-transaction lock. Retry with backoff."""

    code = "LOCK_CONTENTION"


class GatewayError(BillingError):
    """The payment gateway refused or failed to create a charge."""

    code = "GATEWAY_ERROR"
