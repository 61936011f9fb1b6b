"""Display labels for saved payment tokens."""

from typing import Dict, Any, Optional

from ..connectors.base import PaymentMethods
from ..database.models import PaymentToken

# Token types whose checkout label is the token's display name rather than the gateway id.
LABEL_OVERRIDE_PAYMENT_METHOD_TYPES = [
    PaymentMethods.ACH,
    PaymentMethods.ACSS_DEBIT,
    PaymentMethods.CASHAPP_PAY,
    PaymentMethods.LINK,
    PaymentMethods.BACS_DEBIT,
    PaymentMethods.AMAZON_PAY,
    PaymentMethods.BECS_DEBIT,
]


def normalize_payment_method_label(label: str) -> str:
    normalized = {
        "becs direct debit": "BECS Direct Debit",
        "sepa iban": "SEPA IBAN",
    }
    return normalized.get(label.lower(), label)


def saved_method_label(token: PaymentToken) -> Dict[str, Any]:
    """
    The ``method`` block of an account "saved payment methods" row.

    Cards show brand, last4 and expiry; bank debits show the bank or scheme
    with last4; wallets show the wallet with the account email.
    """
    token_type = token.type.lower()
    method: Dict[str, Optional[Any]] = {"gateway": token.gateway_id}

    if token_type == "cc":
        method["brand"] = token.card_type
        method["last4"] = token.last4
        if token.expiry_month and token.expiry_year:
            method["expires"] = f"{token.expiry_month:02d}/{str(token.expiry_year)[-2:]}"
    elif token_type == PaymentMethods.CASHAPP_PAY:
        method["brand"] = "Cash App Pay"
    elif token_type in (PaymentMethods.LINK, PaymentMethods.AMAZON_PAY):
        method["brand"] = token.display_brand()
    else:
        method["brand"] = normalize_payment_method_label(token.display_brand() or "")
        method["last4"] = token.last4

    return {"id": token.id, "is_default": token.is_default, "method": method}
