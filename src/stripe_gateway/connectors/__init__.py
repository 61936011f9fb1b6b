"""Stripe API clients."""

from .base import (
    StripeClientBase,
    StripeResult,
    StripeApiError,
    PaymentMethods,
    UPE_GATEWAY_ID,
    REUSABLE_GATEWAYS_BY_PAYMENT_METHOD,
    QUERYABLE_PAYMENT_METHOD_TYPES,
    is_valid_payment_method_id,
    Address,
    ShippingDetails,
    RemoteCustomer,
    BillingDetails,
    CardDetails,
    PaymentMethodBase,
    CardPaymentMethod,
    SepaDebitPaymentMethod,
    LinkPaymentMethod,
    AmazonPayPaymentMethod,
    UsBankAccountPaymentMethod,
    AcssDebitPaymentMethod,
    CashAppPaymentMethod,
    BacsDebitPaymentMethod,
    BecsDebitPaymentMethod,
    GenericPaymentMethod,
    PaymentMethod,
    parse_payment_method,
    PaymentIntent,
)
from .stripe_connector import StripeClient
from .simulator_connector import StripeSimulator, SimulatorState

__all__ = [
    # Client interface and results
    "StripeClientBase",
    "StripeResult",
    "StripeApiError",
    # Payment method types
    "PaymentMethods",
    "UPE_GATEWAY_ID",
    "REUSABLE_GATEWAYS_BY_PAYMENT_METHOD",
    "QUERYABLE_PAYMENT_METHOD_TYPES",
    "is_valid_payment_method_id",
    # Remote models
    "Address",
    "ShippingDetails",
    "RemoteCustomer",
    "BillingDetails",
    "CardDetails",
    "PaymentMethodBase",
    "CardPaymentMethod",
    "SepaDebitPaymentMethod",
    "LinkPaymentMethod",
    "AmazonPayPaymentMethod",
    "UsBankAccountPaymentMethod",
    "AcssDebitPaymentMethod",
    "CashAppPaymentMethod",
    "BacsDebitPaymentMethod",
    "BecsDebitPaymentMethod",
    "GenericPaymentMethod",
    "PaymentMethod",
    "parse_payment_method",
    "PaymentIntent",
    # Clients
    "StripeClient",
    "StripeSimulator",
    "SimulatorState",
]
