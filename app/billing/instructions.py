# app/billing/instructions.py
from __future__ import annotations

from typing import Any, Optional

from app.billing.models import (
    MANUAL_BANK_TRANSFER,
    PAY_CANCELLED,
    PAY_EXPIRED,
    PAY_FAILED,
    PAY_PAID,
    PAY_REJECTED,
    Payment,
    ServiceFeeRule,
)

E_WALLETS = {"gopay", "ovo", "dana", "shopeepay"}

_TERMINAL_MESSAGES = {
    PAY_PAID: ("Payment confirmed", ["Your payment has been received. Services are being activated."]),
    PAY_EXPIRED: ("Payment expired", ["This payment window has closed.", "Create a new payment to continue."]),
    PAY_FAILED: ("Payment failed", ["The payment could not be completed.", "Create a new payment to try again."]),
    PAY_REJECTED: ("Payment rejected", ["The transfer could not be verified.", "Contact support or create a new payment."]),
    PAY_CANCELLED: ("Payment cancelled", ["This payment was cancelled."]),
}


def build_instructions(payment: Payment, *, currency: str, fee_rule: Optional[ServiceFeeRule] = None) -> dict[str, Any]:
    """Human-readable next steps for (method, status)."""
    if payment.status in _TERMINAL_MESSAGES:
        title, steps = _TERMINAL_MESSAGES[payment.status]
        return {"title": title, "steps": list(steps)}

    amount = f"{currency.upper()} {payment.amount}"
    method = payment.method
    extra = (fee_rule.payment_instructions if fee_rule else None) or None

    if method == MANUAL_BANK_TRANSFER:
        steps = [
            f"Transfer exactly {amount} (the last digits identify your payment).",
            "Keep the transfer receipt.",
            "Your payment is confirmed after an admin verifies the transfer.",
        ]
        if extra:
            steps.insert(0, extra)
        return {"title": "Bank transfer", "steps": steps, "unique_code": payment.unique_code}

    if method.startswith("va_"):
        bank = method[3:].upper()
        steps = [
            f"Open your {bank} banking app or ATM and choose virtual account payment.",
            f"Pay {amount} to virtual account {payment.external_id or '(pending)'}.",
            "The payment is confirmed automatically.",
        ]
        return {"title": f"{bank} virtual account", "steps": steps, "payment_url": payment.payment_url}

    if method == "qris":
        steps = [
            "Open any QRIS-enabled banking or e-wallet app.",
            f"Scan the QR code on the payment page and pay {amount}.",
            "The payment is confirmed automatically.",
        ]
        return {"title": "QRIS", "steps": steps, "payment_url": payment.payment_url}

    if method in E_WALLETS:
        steps = [
            f"Open {method.upper()} from the payment page link.",
            f"Approve the payment of {amount}.",
        ]
        return {"title": method.upper(), "steps": steps, "payment_url": payment.payment_url}

    if method in ("credit_card", "paypal"):
        steps = [
            "Continue to the secure payment page.",
            f"Complete the payment of {amount}.",
        ]
        return {"title": "Card / PayPal", "steps": steps, "payment_url": payment.payment_url}

    steps = [f"Complete the payment of {amount} using the selected method."]
    if extra:
        steps.append(extra)
    return {"title": "Payment", "steps": steps, "payment_url": payment.payment_url}
