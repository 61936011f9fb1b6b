"""Error taxonomy for the Stripe gateway.

Every error carries a machine readable ``code``, a human readable ``message``,
the HTTP status the REST surface should answer with, and optional structured
``data`` for clients that need more than a message.
"""

from typing import Optional, Dict, Any


class StripeGatewayError(Exception):
    """Base class for all errors raised by the gateway services."""

    code = "stripe_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.data = data or {}

    def to_dict(self) -> Dict[str, Any]:
        """Render the error the way the REST surface returns it."""
        return {
            "code": self.code,
            "message": self.message,
            "data": {"status": self.status_code, **self.data},
        }


class CustomerValidationError(StripeGatewayError):
    """A required customer field is missing. Raised before any network call."""

    code = "missing_required_customer_field"
    status_code = 400

    def __init__(self, field_path: str):
        super().__init__(
            f"Missing required customer field: {field_path}",
            data={"field": field_path},
        )
        self.field_path = field_path


class CustomerIdRequired(StripeGatewayError):
    code = "id_required_to_update_user"
    status_code = 400

    def __init__(self):
        super().__init__("Attempting to update a Stripe customer without a customer ID.")


class RemoteError(StripeGatewayError):
    """Stripe answered with an error. The remote message is kept verbatim."""

    code = "stripe_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message or "Unknown error")
        self.error_type = error_type
        self.error_code = error_code

    @classmethod
    def from_api_error(cls, error) -> "RemoteError":
        return cls(error.message, error_type=error.type, error_code=error.code)


class OrderNotFound(StripeGatewayError):
    code = "wc_stripe_missing_order"
    status_code = 404

    def __init__(self, order_id: Any = None):
        super().__init__("Order not found", data={"order_id": order_id} if order_id is not None else None)


class InvalidOrderStatus(StripeGatewayError):
    code = "wc_stripe_invalid_order_status"
    status_code = 400

    def __init__(self, status: str):
        super().__init__("Invalid order status", data={"order_status": status})


class RefundedOrderUncapturable(StripeGatewayError):
    code = "wc_stripe_refunded_order_uncapturable"
    status_code = 400

    def __init__(self):
        super().__init__("Payment cannot be captured for partially or fully refunded orders.")


class PaymentUncapturable(StripeGatewayError):
    code = "wc_stripe_payment_uncapturable"
    status_code = 409

    def __init__(self, intent_status: Optional[str] = None):
        super().__init__("The payment cannot be captured", data={"intent_status": intent_status})


class CaptureAmountTooSmall(StripeGatewayError):
    """Capture rejected by Stripe because the amount is under the currency minimum."""

    code = "wc_stripe_capture_error_amount_too_small"
    status_code = 400

    def __init__(self, minimum_amount: Optional[int], currency: str):
        super().__init__(
            "The capture amount is below the minimum charge amount for this currency.",
            data={
                "minimum_amount": minimum_amount,
                "minimum_amount_currency": currency,
            },
        )
        self.minimum_amount = minimum_amount
        self.currency = currency


class CaptureFailed(StripeGatewayError):
    code = "wc_stripe_capture_error"
    status_code = 502

    def __init__(self, remote_message: Optional[str] = None):
        super().__init__(
            "Payment capture failed to complete with the following message: "
            f"{remote_message or 'Unknown error'}"
        )
        self.remote_message = remote_message
