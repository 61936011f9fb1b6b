import os
import logging
from typing import Optional, Dict, Any, List, Callable

import stripe

from .base import (
    StripeClientBase,
    StripeResult,
    StripeApiError,
    RemoteCustomer,
    PaymentIntent,
    PaymentMethod,
    PaymentMethods,
    parse_payment_method,
)

logger = logging.getLogger(__name__)

# Fallback error types for exceptions raised without a JSON error body.
ERROR_TYPES = [
    (stripe.error.CardError, "card_error"),
    (stripe.error.InvalidRequestError, "invalid_request_error"),
    (stripe.error.IdempotencyError, "idempotency_error"),
    (stripe.error.AuthenticationError, "authentication_error"),
    (stripe.error.PermissionError, "permission_error"),
    (stripe.error.RateLimitError, "rate_limit_error"),
    (stripe.error.APIConnectionError, "api_connection_error"),
]

# Expansions needed to recover the APM behind a SEPA debit payment method.
SEPA_PROVENANCE_EXPANSIONS = [
    "data.sepa_debit.generated_from.charge",
    "data.sepa_debit.generated_from.setup_attempt",
]


def _to_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def api_error_from_exception(error: stripe.error.StripeError) -> StripeApiError:
    """Translate a stripe-python exception into the canonical error model."""
    remote = getattr(error, "error", None)
    if remote is not None and getattr(remote, "type", None):
        return StripeApiError(
            type=remote.type,
            message=getattr(remote, "message", None) or error.user_message or "",
            code=getattr(remote, "code", None),
            param=getattr(remote, "param", None),
        )

    error_type = "api_error"
    for exc_class, mapped_type in ERROR_TYPES:
        if isinstance(error, exc_class):
            error_type = mapped_type
            break
    return StripeApiError(
        type=error_type,
        message=error.user_message or getattr(error, "_message", None) or str(error),
        code=getattr(error, "code", None),
        param=getattr(error, "param", None),
    )


class StripeClient(StripeClientBase):
    """
    Stripe API client built on stripe-python. Every call is wrapped so that a
    StripeError becomes a failed StripeResult instead of an exception.
    """

    def __init__(self, api_key: Optional[str] = None):
        self._api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self._api_key:
            raise ValueError(
                "STRIPE_API_KEY must be provided either as argument or environment variable"
            )

    def _call(self, operation: str, func: Callable[[], Any], decode: Callable[[Any], Any]) -> StripeResult:
        stripe.api_key = self._api_key
        try:
            response = func()
        except stripe.error.StripeError as e:
            api_error = api_error_from_exception(e)
            logger.warning(f"Stripe {operation} failed: {api_error.type}: {api_error.message}")
            return StripeResult.failure(api_error)
        return StripeResult.success(decode(response))

    @staticmethod
    def _customer(response: Any) -> RemoteCustomer:
        return RemoteCustomer.model_validate(_to_dict(response))

    @staticmethod
    def _payment_method(response: Any) -> PaymentMethod:
        return parse_payment_method(_to_dict(response))

    @staticmethod
    def _intent(response: Any) -> PaymentIntent:
        return PaymentIntent.model_validate(_to_dict(response))

    def retrieve_customer(self, customer_id: str) -> StripeResult[RemoteCustomer]:
        return self._call(
            "customer retrieve",
            lambda: stripe.Customer.retrieve(customer_id),
            self._customer,
        )

    def create_customer(self, params: Dict[str, Any]) -> StripeResult[RemoteCustomer]:
        return self._call(
            "customer create",
            lambda: stripe.Customer.create(**params),
            self._customer,
        )

    def update_customer(self, customer_id: str, params: Dict[str, Any]) -> StripeResult[RemoteCustomer]:
        return self._call(
            "customer update",
            lambda: stripe.Customer.modify(customer_id, **params),
            self._customer,
        )

    def search_customers(self, query: str) -> StripeResult[List[RemoteCustomer]]:
        return self._call(
            "customer search",
            lambda: stripe.Customer.search(query=query),
            lambda page: [self._customer(c) for c in page.data],
        )

    def list_payment_methods(
        self,
        customer_id: str,
        payment_method_type: str,
        limit: int = 100,
    ) -> StripeResult[List[PaymentMethod]]:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "type": payment_method_type,
            "limit": min(limit, 100),  # Stripe max is 100
        }
        if payment_method_type == PaymentMethods.SEPA_DEBIT:
            params["expand"] = SEPA_PROVENANCE_EXPANSIONS
        return self._call(
            "payment method list",
            lambda: stripe.PaymentMethod.list(**params),
            lambda page: [self._payment_method(pm) for pm in page.data],
        )

    def retrieve_payment_method(self, payment_method_id: str) -> StripeResult[PaymentMethod]:
        return self._call(
            "payment method retrieve",
            lambda: stripe.PaymentMethod.retrieve(payment_method_id),
            self._payment_method,
        )

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> StripeResult[PaymentMethod]:
        return self._call(
            "payment method attach",
            lambda: stripe.PaymentMethod.attach(payment_method_id, customer=customer_id),
            self._payment_method,
        )

    def detach_payment_method(self, payment_method_id: str) -> StripeResult[PaymentMethod]:
        return self._call(
            "payment method detach",
            lambda: stripe.PaymentMethod.detach(payment_method_id),
            self._payment_method,
        )

    def retrieve_payment_intent(self, intent_id: str) -> StripeResult[PaymentIntent]:
        return self._call(
            "payment intent retrieve",
            lambda: stripe.PaymentIntent.retrieve(intent_id),
            self._intent,
        )

    def capture_payment_intent(
        self,
        intent_id: str,
        amount_to_capture: Optional[int] = None,
    ) -> StripeResult[PaymentIntent]:
        params: Dict[str, Any] = {}
        if amount_to_capture is not None:
            params["amount_to_capture"] = amount_to_capture
        return self._call(
            "payment intent capture",
            lambda: stripe.PaymentIntent.capture(intent_id, **params),
            self._intent,
        )

    def health_check(self) -> Dict[str, Any]:
        return {"ok": bool(self._api_key), "provider": "stripe"}
