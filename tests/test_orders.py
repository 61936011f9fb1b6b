"""Tests for order customer creation and terminal payment capture."""

import pytest

from stripe_gateway.connectors.base import PaymentIntent, StripeResult
from stripe_gateway.database import (
    Order,
    OrderRepository,
    OrderStatus,
    UserRepository,
    close_db,
    get_db_context,
    init_db,
)
from stripe_gateway.errors import (
    CaptureAmountTooSmall,
    CaptureFailed,
    CustomerValidationError,
    InvalidOrderStatus,
    OrderNotFound,
    PaymentUncapturable,
    RefundedOrderUncapturable,
    RemoteError,
)
from stripe_gateway.orders import OrderService, IN_PERSON_PAYMENT_METHOD_TITLE

from conftest import BILLING


@pytest.fixture
def service(db_session, simulator, config):
    return OrderService(db_session, simulator, config)


class TestCreateCustomer:
    async def test_guest_order(self, service, simulator, make_order):
        order = await make_order()

        result = await service.create_customer(order.id)

        customer = simulator.state.customers[result["id"]]
        assert customer["email"] == "jane@example.com"
        assert customer["name"] == "Jane Doe"
        assert customer["description"] == "Name: Jane Doe, Guest"
        assert order.stripe_customer_id == result["id"]

    async def test_user_order_stores_id_on_user(self, service, simulator, make_user, make_order, db_session):
        user = await make_user(username="jdoe")
        order = await make_order(user_id=user.id)

        result = await service.create_customer(order.id)

        assert (await UserRepository(db_session).get_by_id(user.id)).stripe_customer_id == result["id"]
        assert simulator.state.customers[result["id"]]["description"] == "Name: Jane Doe, Username: jdoe"

    async def test_existing_customer_is_updated(self, service, simulator, make_order):
        simulator.add_customer(id="cus_1", email="old@example.com")
        order = await make_order(stripe_customer_id="cus_1", billing_email="new@example.com")

        result = await service.create_customer(order.id)

        assert result == {"id": "cus_1"}
        assert simulator.state.customers["cus_1"]["email"] == "new@example.com"
        assert simulator.call_count("create_customer") == 0

    async def test_deleted_customer_is_recreated(self, service, simulator, make_order):
        order = await make_order(stripe_customer_id="cus_gone")

        result = await service.create_customer(order.id)

        assert result["id"] != "cus_gone"
        assert simulator.state.customers[result["id"]]["email"] == "jane@example.com"
        assert order.stripe_customer_id == result["id"]

    async def test_unknown_order(self, service):
        with pytest.raises(OrderNotFound):
            await service.create_customer(999)

    @pytest.mark.parametrize("status", ["completed", "cancelled", "refunded", "failed"])
    async def test_disallowed_status(self, service, simulator, make_order, status):
        order = await make_order(status=status)

        with pytest.raises(InvalidOrderStatus):
            await service.create_customer(order.id)
        assert simulator.call_count() == 0

    async def test_missing_email(self, service, simulator, make_order):
        order = await make_order(billing_email="")

        with pytest.raises(CustomerValidationError) as exc_info:
            await service.create_customer(order.id)

        assert exc_info.value.message == "Missing required customer field: email"
        assert simulator.call_count("create_customer") == 0


class TestCapture:
    async def test_capture_succeeds(self, service, simulator, make_order):
        order = await make_order(total="12.00")
        intent_id = simulator.add_payment_intent(amount=1200, latest_charge="ch_1", customer="cus_1")

        result = await service.capture(order.id, intent_id)

        assert result == {"status": "succeeded", "id": intent_id}
        assert order.status == OrderStatus.COMPLETED
        assert order.stripe_intent_id == intent_id
        assert order.stripe_charge_id == "ch_1"
        assert order.stripe_customer_id == "cus_1"
        assert order.payment_method_title == IN_PERSON_PAYMENT_METHOD_TITLE
        assert simulator.state.payment_intents[intent_id]["amount_received"] == 1200

    async def test_refunded_order_fails_before_remote_call(self, service, simulator, make_order):
        order = await make_order(total="20.00", total_refunded="12.00")
        intent_id = simulator.add_payment_intent()

        with pytest.raises(RefundedOrderUncapturable) as exc_info:
            await service.capture(order.id, intent_id)

        assert exc_info.value.status_code == 400
        assert simulator.call_count() == 0

    async def test_unknown_order(self, service, simulator):
        with pytest.raises(OrderNotFound):
            await service.capture(999, "pi_1")
        assert simulator.call_count() == 0

    @pytest.mark.parametrize("status", ["succeeded", "canceled", "requires_payment_method"])
    async def test_uncapturable_intent(self, service, simulator, make_order, status):
        order = await make_order()
        intent_id = simulator.add_payment_intent(status=status)

        with pytest.raises(PaymentUncapturable) as exc_info:
            await service.capture(order.id, intent_id)

        assert exc_info.value.status_code == 409
        assert simulator.call_count("capture_payment_intent") == 0

    async def test_processing_intent_reaches_capture(self, service, simulator, make_order):
        order = await make_order()
        intent_id = simulator.add_payment_intent(status="processing")

        with pytest.raises(CaptureFailed):
            await service.capture(order.id, intent_id)

        assert simulator.call_count("capture_payment_intent") == 1
        assert order.status == OrderStatus.PENDING

    async def test_missing_intent(self, service, make_order):
        order = await make_order()
        with pytest.raises(RemoteError) as exc_info:
            await service.capture(order.id, "pi_missing")
        assert exc_info.value.message == "No such payment_intent: 'pi_missing'"

    async def test_amount_too_small(self, service, simulator, make_order):
        order = await make_order(total="0.30", currency="eur")
        intent_id = simulator.add_payment_intent(amount=30, currency="eur")
        simulator.queue_error(
            "capture_payment_intent",
            "Amount must be at least €0.50 eur",
            error_type="invalid_request_error",
            code="amount_too_small",
        )

        with pytest.raises(CaptureAmountTooSmall) as exc_info:
            await service.capture(order.id, intent_id)

        assert exc_info.value.minimum_amount == 50
        assert exc_info.value.currency == "EUR"

    async def test_amount_too_small_unknown_currency(self, service, simulator, make_order):
        order = await make_order(total="1.00", currency="xyz")
        intent_id = simulator.add_payment_intent(amount=100, currency="xyz")
        simulator.queue_error("capture_payment_intent", "Amount too small", code="amount_too_small")

        with pytest.raises(CaptureAmountTooSmall) as exc_info:
            await service.capture(order.id, intent_id)

        assert exc_info.value.minimum_amount is None
        assert exc_info.value.to_dict()["data"]["minimum_amount"] is None

    async def test_other_capture_errors_keep_message(self, service, simulator, make_order):
        order = await make_order()
        intent_id = simulator.add_payment_intent()
        simulator.queue_error("capture_payment_intent", "The charge has expired.", code="charge_expired_for_capture")

        with pytest.raises(CaptureFailed) as exc_info:
            await service.capture(order.id, intent_id)

        assert exc_info.value.remote_message == "The charge has expired."
        assert "The charge has expired." in exc_info.value.message

    async def test_capture_not_succeeded(self, service, simulator, make_order, monkeypatch):
        order = await make_order()
        intent_id = simulator.add_payment_intent()

        def capture_without_success(intent_id, amount_to_capture=None):
            return StripeResult.success(PaymentIntent(id=intent_id, status="requires_capture"))

        monkeypatch.setattr(simulator, "capture_payment_intent", capture_without_success)

        with pytest.raises(CaptureFailed) as exc_info:
            await service.capture(order.id, intent_id)

        assert exc_info.value.message.endswith("Unknown error")
        assert order.status != OrderStatus.COMPLETED


class TestCaptureSessionScope:
    @pytest.fixture
    async def database(self, tmp_path):
        await init_db(f"sqlite+aiosqlite:///{tmp_path}/orders.db")
        yield
        await close_db()

    async def test_failed_capture_keeps_intent_on_order(self, database, simulator, config):
        async with get_db_context() as session:
            order = await OrderRepository(session).create("usd", "12.00", **BILLING)
            order_id = order.id
        intent_id = simulator.add_payment_intent(amount=1200, latest_charge="ch_1")
        simulator.queue_error("capture_payment_intent", "The charge has expired.")

        with pytest.raises(CaptureFailed):
            async with get_db_context() as session:
                await OrderService(session, simulator, config).capture(order_id, intent_id)

        async with get_db_context() as session:
            order = await session.get(Order, order_id)
            assert order.payment_method == "stripe"
            assert order.stripe_intent_id == intent_id
            assert order.stripe_charge_id == "ch_1"
            assert order.status == OrderStatus.PENDING
