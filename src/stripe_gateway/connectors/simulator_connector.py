"""Simulator client for exercising gateway flows without real Stripe calls."""

import re
import uuid
import copy
import logging
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field

from .base import (
    StripeClientBase,
    StripeResult,
    StripeApiError,
    RemoteCustomer,
    PaymentIntent,
    PaymentMethod,
    parse_payment_method,
)

logger = logging.getLogger(__name__)

SEARCH_QUERY_PATTERN = re.compile(r"name:'(?P<name>.*)' AND email:'(?P<email>.*)'")


@dataclass
class SimulatorState:
    """In-memory representation of the simulated Stripe account."""
    customers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    payment_methods: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    payment_intents: Dict[str, Dict[str, Any]] = field(default_factory=dict)


class StripeSimulator(StripeClientBase):
    """
    In-memory stand-in for the Stripe API.

    Features:
    - Customers, payment methods and payment intents kept in memory
    - Queued errors per operation to simulate remote failures
    - Call log for asserting which remote calls were made
    """

    def __init__(self):
        self.state = SimulatorState()
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self._queued_errors: Dict[str, List[StripeApiError]] = {}
        logger.info("StripeSimulator initialized")

    @staticmethod
    def _generate_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:24]}"

    def queue_error(
        self,
        operation: str,
        message: str,
        error_type: str = "invalid_request_error",
        code: Optional[str] = None,
    ) -> None:
        """Make the next call to ``operation`` fail with the given error."""
        error = StripeApiError(type=error_type, message=message, code=code)
        self._queued_errors.setdefault(operation, []).append(error)

    def _record(self, operation: str, *args: Any) -> Optional[StripeApiError]:
        self.calls.append((operation, args))
        queued = self._queued_errors.get(operation)
        if queued:
            return queued.pop(0)
        return None

    def call_count(self, operation: Optional[str] = None) -> int:
        if operation is None:
            return len(self.calls)
        return sum(1 for name, _ in self.calls if name == operation)

    @staticmethod
    def _missing(resource: str, resource_id: str) -> StripeApiError:
        return StripeApiError(
            type="invalid_request_error",
            message=f"No such {resource}: '{resource_id}'",
            code="resource_missing",
        )

    # Test helpers

    def add_customer(self, **data: Any) -> str:
        customer_id = data.pop("id", None) or self._generate_id("cus")
        self.state.customers[customer_id] = {"id": customer_id, "object": "customer", **data}
        return customer_id

    def add_payment_method(self, payment_method_type: str, customer: Optional[str] = None, **data: Any) -> str:
        payment_method_id = data.pop("id", None) or self._generate_id("pm")
        self.state.payment_methods[payment_method_id] = {
            "id": payment_method_id,
            "object": "payment_method",
            "type": payment_method_type,
            "customer": customer,
            **data,
        }
        return payment_method_id

    def add_payment_intent(self, status: str = "requires_capture", amount: int = 1000, currency: str = "usd", **data: Any) -> str:
        intent_id = data.pop("id", None) or self._generate_id("pi")
        self.state.payment_intents[intent_id] = {
            "id": intent_id,
            "object": "payment_intent",
            "status": status,
            "amount": amount,
            "currency": currency,
            **data,
        }
        return intent_id

    # Customers

    def retrieve_customer(self, customer_id: str) -> StripeResult[RemoteCustomer]:
        error = self._record("retrieve_customer", customer_id)
        if error:
            return StripeResult.failure(error)
        customer = self.state.customers.get(customer_id)
        if customer is None:
            return StripeResult.failure(self._missing("customer", customer_id))
        return StripeResult.success(RemoteCustomer.model_validate(customer))

    def create_customer(self, params: Dict[str, Any]) -> StripeResult[RemoteCustomer]:
        error = self._record("create_customer", copy.deepcopy(params))
        if error:
            return StripeResult.failure(error)
        customer_id = self.add_customer(**copy.deepcopy(params))
        return StripeResult.success(RemoteCustomer.model_validate(self.state.customers[customer_id]))

    def update_customer(self, customer_id: str, params: Dict[str, Any]) -> StripeResult[RemoteCustomer]:
        error = self._record("update_customer", customer_id, copy.deepcopy(params))
        if error:
            return StripeResult.failure(error)
        customer = self.state.customers.get(customer_id)
        if customer is None:
            return StripeResult.failure(self._missing("customer", customer_id))
        customer.update(copy.deepcopy(params))
        return StripeResult.success(RemoteCustomer.model_validate(customer))

    def search_customers(self, query: str) -> StripeResult[List[RemoteCustomer]]:
        error = self._record("search_customers", query)
        if error:
            return StripeResult.failure(error)
        match = SEARCH_QUERY_PATTERN.fullmatch(query)
        if not match:
            return StripeResult.success([])
        found = [
            RemoteCustomer.model_validate(c)
            for c in self.state.customers.values()
            if c.get("name") == match.group("name") and c.get("email") == match.group("email")
        ]
        return StripeResult.success(found)

    # Payment methods

    def list_payment_methods(
        self,
        customer_id: str,
        payment_method_type: str,
        limit: int = 100,
    ) -> StripeResult[List[PaymentMethod]]:
        error = self._record("list_payment_methods", customer_id, payment_method_type)
        if error:
            return StripeResult.failure(error)
        if customer_id not in self.state.customers:
            return StripeResult.failure(self._missing("customer", customer_id))
        methods = [
            parse_payment_method(pm)
            for pm in self.state.payment_methods.values()
            if pm.get("customer") == customer_id and pm.get("type") == payment_method_type
        ]
        return StripeResult.success(methods[:limit])

    def retrieve_payment_method(self, payment_method_id: str) -> StripeResult[PaymentMethod]:
        error = self._record("retrieve_payment_method", payment_method_id)
        if error:
            return StripeResult.failure(error)
        payment_method = self.state.payment_methods.get(payment_method_id)
        if payment_method is None:
            return StripeResult.failure(self._missing("payment_method", payment_method_id))
        return StripeResult.success(parse_payment_method(payment_method))

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> StripeResult[PaymentMethod]:
        error = self._record("attach_payment_method", payment_method_id, customer_id)
        if error:
            return StripeResult.failure(error)
        if customer_id not in self.state.customers:
            return StripeResult.failure(self._missing("customer", customer_id))
        payment_method = self.state.payment_methods.get(payment_method_id)
        if payment_method is None:
            return StripeResult.failure(self._missing("payment_method", payment_method_id))
        if payment_method.get("customer") and payment_method["customer"] != customer_id:
            return StripeResult.failure(StripeApiError(
                type="invalid_request_error",
                message="The payment method you provided has already been attached to a customer.",
            ))
        payment_method["customer"] = customer_id
        return StripeResult.success(parse_payment_method(payment_method))

    def detach_payment_method(self, payment_method_id: str) -> StripeResult[PaymentMethod]:
        error = self._record("detach_payment_method", payment_method_id)
        if error:
            return StripeResult.failure(error)
        payment_method = self.state.payment_methods.get(payment_method_id)
        if payment_method is None:
            return StripeResult.failure(self._missing("payment_method", payment_method_id))
        payment_method["customer"] = None
        return StripeResult.success(parse_payment_method(payment_method))

    # Payment intents

    def retrieve_payment_intent(self, intent_id: str) -> StripeResult[PaymentIntent]:
        error = self._record("retrieve_payment_intent", intent_id)
        if error:
            return StripeResult.failure(error)
        intent = self.state.payment_intents.get(intent_id)
        if intent is None:
            return StripeResult.failure(self._missing("payment_intent", intent_id))
        return StripeResult.success(PaymentIntent.model_validate(intent))

    def capture_payment_intent(
        self,
        intent_id: str,
        amount_to_capture: Optional[int] = None,
    ) -> StripeResult[PaymentIntent]:
        error = self._record("capture_payment_intent", intent_id, amount_to_capture)
        if error:
            return StripeResult.failure(error)
        intent = self.state.payment_intents.get(intent_id)
        if intent is None:
            return StripeResult.failure(self._missing("payment_intent", intent_id))
        if intent["status"] != "requires_capture":
            return StripeResult.failure(StripeApiError(
                type="invalid_request_error",
                message=f"This PaymentIntent could not be captured because it has a status of {intent['status']}.",
                code="payment_intent_unexpected_state",
            ))
        intent["status"] = "succeeded"
        intent["amount_received"] = amount_to_capture if amount_to_capture is not None else intent["amount"]
        return StripeResult.success(PaymentIntent.model_validate(intent))

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": "simulator",
            "customer_count": len(self.state.customers),
            "payment_method_count": len(self.state.payment_methods),
        }
