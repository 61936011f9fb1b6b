"""Order level operations: attaching Stripe customers and capturing in-person payments."""

import logging
from typing import Optional, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from .config import GatewayConfig
from .connectors.base import StripeClientBase, UPE_GATEWAY_ID
from .currency import get_minimum_charge_amount
from .customers import CustomerReconciler
from .database.models import Order, OrderStatus
from .database.repository import OrderRepository
from .errors import (
    OrderNotFound,
    InvalidOrderStatus,
    RefundedOrderUncapturable,
    PaymentUncapturable,
    CaptureAmountTooSmall,
    CaptureFailed,
    RemoteError,
)

logger = logging.getLogger(__name__)

IN_PERSON_PAYMENT_METHOD_TITLE = "WooCommerce Stripe In-Person Payments"

CAPTURABLE_INTENT_STATUSES = ("processing", "requires_capture")
INTENT_SUCCEEDED = "succeeded"


class OrderService:
    """Service class for order operations against Stripe."""

    def __init__(
        self,
        session: AsyncSession,
        client: StripeClientBase,
        config: Optional[GatewayConfig] = None,
        customers: Optional[CustomerReconciler] = None,
    ):
        """Initialize the service.

        Args:
            session: AsyncSession instance for database operations.
            client: Stripe API client.
            config: Gateway configuration.
            customers: Reconciler used to create or update order customers.
        """
        self.session = session
        self.client = client
        self.config = config or GatewayConfig()
        self.customers = customers or CustomerReconciler(session, client, self.config)
        self.orders = OrderRepository(session)

    async def get_order(self, order_id: int) -> Order:
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def create_customer(self, order_id: int) -> Dict[str, str]:
        """Create or update the Stripe customer for an order and store its id on the order.

        Args:
            order_id: Local order id.

        Returns:
            ``{"id": customer_id}``.

        Raises:
            OrderNotFound: Unknown order.
            InvalidOrderStatus: The order is completed, cancelled, refunded or failed.
            CustomerValidationError: The order lacks a required customer field.
            RemoteError: Stripe rejected the request.
        """
        order = await self.get_order(order_id)
        if order.has_status(self.config.disallowed_customer_order_statuses):
            raise InvalidOrderStatus(order.status)

        identity = await self.customers.identity_for_order(order)
        customer_data = self.customers.map_customer_data(order, identity.user)
        if identity.customer_id:
            customer_id = await self.customers.update_customer(identity, customer_data)
        else:
            customer_id = await self.customers.create_customer(identity, customer_data)

        order.stripe_customer_id = customer_id
        await self.orders.save(order)
        logger.info(f"Attached Stripe customer {customer_id} to order {order.id}")
        return {"id": customer_id}

    async def capture(self, order_id: int, intent_id: str) -> Dict[str, str]:
        """Capture an authorized payment intent for an order and complete it.

        Each precondition fails fast; nothing is retried. The intent details
        are committed on the order before the capture request is sent.

        Args:
            order_id: Local order id.
            intent_id: Stripe PaymentIntent id.

        Returns:
            ``{"status": "succeeded", "id": intent_id}``.

        Raises:
            OrderNotFound: Unknown order.
            RefundedOrderUncapturable: The order has refunds. Raised before any remote call.
            RemoteError: The intent could not be retrieved.
            PaymentUncapturable: The intent is not awaiting capture.
            CaptureAmountTooSmall: The total is below the currency's minimum charge.
            CaptureFailed: Any other capture failure.
        """
        order = await self.get_order(order_id)

        if order.refunded_amount > 0:
            raise RefundedOrderUncapturable()

        retrieved = self.client.retrieve_payment_intent(intent_id)
        if not retrieved.ok:
            raise RemoteError.from_api_error(retrieved.error)
        intent = retrieved.value

        if intent.status not in CAPTURABLE_INTENT_STATUSES:
            raise PaymentUncapturable(intent.status)

        order.payment_method = UPE_GATEWAY_ID
        order.payment_method_title = IN_PERSON_PAYMENT_METHOD_TITLE
        order.stripe_intent_id = intent.id
        order.stripe_charge_id = intent.latest_charge_id
        if intent.customer:
            order.stripe_customer_id = intent.customer
        await self.orders.save(order)
        # The intent stays recorded on the order even if the capture below fails.
        await self.session.commit()

        captured = self.client.capture_payment_intent(intent.id, amount_to_capture=order.total_amount)
        if not captured.ok:
            if captured.error.code == "amount_too_small":
                currency = order.currency.upper()
                raise CaptureAmountTooSmall(get_minimum_charge_amount(currency), currency)
            logger.error(f"Capture of {intent.id} for order {order.id} failed: {captured.error.message}")
            raise CaptureFailed(captured.error.message or None)

        if captured.value.status != INTENT_SUCCEEDED:
            raise CaptureFailed()

        await self.orders.update_status(order, OrderStatus.COMPLETED)
        logger.info(f"Captured {intent.id} for order {order.id}")
        return {"status": captured.value.status, "id": captured.value.id}
