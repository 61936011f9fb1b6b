"""Tests for the customer reconciler."""

import pytest

from stripe_gateway.customers import (
    CustomerReconciler,
    CustomerArgsPolicy,
    LocalIdentity,
    MetadataPolicy,
    RequiredFieldsPolicy,
    validate_customer_request,
    PAYMENT_METHODS_CACHE_PREFIX,
)
from stripe_gateway.database import TransientCache, UserRepository
from stripe_gateway.errors import CustomerIdRequired, CustomerValidationError, RemoteError

from conftest import card_data


@pytest.fixture
def reconciler(db_session, simulator, config):
    return CustomerReconciler(db_session, simulator, config)


class TestRequiredFieldsPolicy:
    def test_default_fields(self):
        required = RequiredFieldsPolicy().required_fields()
        assert required["email"] is True
        assert required["name"] is True
        assert required["address"] == {
            "line1": True,
            "city": True,
            "country": True,
            "postal_code": True,
            "state": True,
        }

    def test_add_payment_method_page_only_needs_email(self):
        assert RequiredFieldsPolicy().required_fields(is_add_payment_method_page=True) == {"email": True}

    def test_optional_address(self):
        policy = RequiredFieldsPolicy(["billing_email", "billing_first_name"])
        assert policy.required_fields() == {"email": True, "name": True}


class TestValidateCustomerRequest:
    def test_missing_email(self):
        with pytest.raises(CustomerValidationError) as exc_info:
            validate_customer_request({"email": "", "name": "Jane Doe"}, {"email": True})
        assert exc_info.value.message == "Missing required customer field: email"

    def test_missing_nested_address_field(self):
        request = {"email": "jane@example.com", "address": {"line1": "", "city": "Springfield"}}
        with pytest.raises(CustomerValidationError) as exc_info:
            validate_customer_request(request, {"address": {"line1": True, "city": True}})
        assert exc_info.value.field_path == "address->line1"

    def test_valid_request(self):
        validate_customer_request(
            {"email": "jane@example.com", "name": "Jane"},
            {"email": True, "name": True},
        )


class TestIdentities:
    async def test_guest(self, reconciler):
        identity = await reconciler.identity_for_user(0)
        assert identity.is_guest
        assert identity.user_id == 0

    async def test_user_with_customer(self, reconciler, make_user):
        user = await make_user(stripe_customer_id="cus_123")
        identity = await reconciler.identity_for_user(user.id)
        assert identity.user_id == user.id
        assert identity.customer_id == "cus_123"

    async def test_guest_order_uses_order_customer(self, reconciler, make_order):
        order = await make_order(stripe_customer_id="cus_order")
        identity = await reconciler.identity_for_order(order)
        assert identity.is_guest
        assert identity.customer_id == "cus_order"


class TestGenerateCustomerRequest:
    async def test_user_request(self, reconciler, make_user):
        user = await make_user(username="jdoe", locale="de_DE")
        request = reconciler.generate_customer_request(LocalIdentity(user=user))

        assert request["email"] == user.email
        assert request["name"] == "Jane Doe"
        assert request["description"] == "Name: Jane Doe, Username: jdoe"
        assert request["preferred_locales"] == ["de-DE"]
        assert request["address"]["line1"] == "1 Main St"
        assert request["address"]["postal_code"] == "62701"

    def test_guest_request_from_form_fields(self, reconciler):
        form = {
            "billing_first_name": " Sam ",
            "billing_last_name": "Smith",
            "billing_email": "sam@example.com",
            "billing_city": "Paris",
        }
        request = reconciler.generate_customer_request(LocalIdentity(), {"form_fields": form})

        assert request["email"] == "sam@example.com"
        assert request["name"] == "Sam Smith"
        assert request["description"] == "Name: Sam Smith, Guest"
        assert request["address"]["city"] == "Paris"
        assert request["preferred_locales"] == ["en-US"]
        assert "form_fields" not in request

    async def test_order_overrides_user(self, reconciler, make_user, make_order):
        user = await make_user()
        order = await make_order(billing_email="order@example.com", billing_city="Chicago")
        request = reconciler.generate_customer_request(LocalIdentity(user=user), {"order": order})

        assert request["email"] == "order@example.com"
        assert request["address"]["city"] == "Chicago"
        assert "order" not in request

    async def test_explicit_args_win(self, reconciler, make_user):
        user = await make_user()
        request = reconciler.generate_customer_request(LocalIdentity(user=user), {"email": "explicit@example.com"})
        assert request["email"] == "explicit@example.com"

    async def test_metadata_policy(self, db_session, simulator, config, make_user):
        class StoreMetadata(MetadataPolicy):
            def enrich(self, metadata, user):
                return {**metadata, "store": "shop-1"}

        reconciler = CustomerReconciler(db_session, simulator, config, metadata_policy=StoreMetadata())
        request = reconciler.generate_customer_request(LocalIdentity(user=await make_user()))
        assert request["metadata"] == {"store": "shop-1"}

    async def test_map_customer_data_with_shipping(self, make_order):
        order = await make_order(
            shipping_first_name="Sam",
            shipping_last_name="Smith",
            shipping_address_1="2 Side St",
            shipping_postcode="10001",
        )
        data = CustomerReconciler.map_customer_data(order)

        assert data["name"] == "Jane Doe"
        assert data["description"] == "Name: Jane Doe, Guest"
        assert data["phone"] == "555-0100"
        assert data["shipping"]["name"] == "Sam Smith"
        assert data["shipping"]["address"]["postal_code"] == "10001"

    def test_map_customer_data_nothing(self):
        assert CustomerReconciler.map_customer_data() == {}


class TestCreateCustomer:
    async def test_create_for_user_stores_id(self, reconciler, simulator, make_user, db_session):
        user = await make_user()
        identity = await reconciler.identity_for_user(user.id)

        customer_id = await reconciler.create_customer(identity)

        assert customer_id in simulator.state.customers
        assert identity.customer_id == customer_id
        assert (await UserRepository(db_session).get_by_id(user.id)).stripe_customer_id == customer_id

    async def test_missing_email_makes_no_remote_call(self, reconciler, simulator):
        with pytest.raises(CustomerValidationError) as exc_info:
            await reconciler.create_customer(
                LocalIdentity(),
                {"email": "", "name": "Jane Doe"},
                is_add_payment_method_page=True,
            )

        assert exc_info.value.message == "Missing required customer field: email"
        assert simulator.call_count() == 0

    async def test_guest_reuses_existing_customer(self, reconciler, simulator):
        simulator.add_customer(id="cus_existing", name="Sam Smith", email="sam@example.com")
        form = {
            "billing_first_name": "Sam",
            "billing_last_name": "Smith",
            "billing_email": "sam@example.com",
            "billing_address_1": "1 Rue",
            "billing_city": "Paris",
            "billing_postcode": "75001",
            "billing_country": "FR",
            "billing_state": "IDF",
        }
        identity = LocalIdentity()

        customer_id = await reconciler.create_customer(identity, {"form_fields": form})

        assert customer_id == "cus_existing"
        assert simulator.call_count("create_customer") == 0
        assert simulator.call_count("update_customer") == 1

    async def test_remote_error_propagates(self, reconciler, simulator, make_user):
        simulator.queue_error("create_customer", "Invalid email address: nope")
        identity = await reconciler.identity_for_user((await make_user()).id)

        with pytest.raises(RemoteError) as exc_info:
            await reconciler.create_customer(identity)
        assert exc_info.value.message == "Invalid email address: nope"
        assert identity.customer_id is None

    async def test_args_policy_applied(self, db_session, simulator, config, make_user):
        class TaggingPolicy(CustomerArgsPolicy):
            def create_args(self, args):
                return {**args, "metadata": {"source": "checkout"}}

        reconciler = CustomerReconciler(db_session, simulator, config, args_policy=TaggingPolicy())
        identity = await reconciler.identity_for_user((await make_user()).id)
        customer_id = await reconciler.create_customer(identity)

        assert simulator.state.customers[customer_id]["metadata"] == {"source": "checkout"}


class TestUpdateCustomer:
    async def test_requires_customer_id(self, reconciler, make_user):
        identity = await reconciler.identity_for_user((await make_user()).id)
        with pytest.raises(CustomerIdRequired):
            await reconciler.update_customer(identity)

    async def test_update(self, reconciler, simulator, make_user):
        simulator.add_customer(id="cus_1", email="old@example.com")
        user = await make_user(stripe_customer_id="cus_1")
        identity = await reconciler.identity_for_user(user.id)

        customer_id = await reconciler.update_customer(identity, {"email": "new@example.com"})

        assert customer_id == "cus_1"
        assert simulator.state.customers["cus_1"]["email"] == "new@example.com"

    async def test_deleted_customer_recreated_once(self, reconciler, simulator, make_user):
        user = await make_user(stripe_customer_id="cus_gone")
        identity = await reconciler.identity_for_user(user.id)

        customer_id = await reconciler.update_customer(identity)

        assert customer_id != "cus_gone"
        assert customer_id in simulator.state.customers
        assert user.stripe_customer_id == customer_id
        assert simulator.call_count("create_customer") == 1
        assert simulator.call_count("update_customer") == 2

    async def test_repeated_missing_customer_is_fatal(self, reconciler, simulator, make_user):
        simulator.add_customer(id="cus_1")
        user = await make_user(stripe_customer_id="cus_1")
        identity = await reconciler.identity_for_user(user.id)
        simulator.queue_error("update_customer", "No such customer: 'cus_1'")
        simulator.queue_error("update_customer", "No such customer: 'cus_new'")

        with pytest.raises(RemoteError) as exc_info:
            await reconciler.update_customer(identity)

        assert "No such customer" in exc_info.value.message
        assert simulator.call_count("create_customer") == 1
        assert simulator.call_count("update_customer") == 2

    async def test_update_or_create(self, reconciler, simulator, make_user):
        identity = await reconciler.identity_for_user((await make_user()).id)
        customer_id = await reconciler.update_or_create_customer(identity)
        assert simulator.call_count("create_customer") == 1

        assert await reconciler.update_or_create_customer(identity) == customer_id
        assert simulator.call_count("update_customer") == 1


class TestEnsureCustomer:
    async def test_existing_customer(self, reconciler, simulator, make_user):
        simulator.add_customer(id="cus_1", email="jane@example.com")
        identity = await reconciler.identity_for_user((await make_user(stripe_customer_id="cus_1")).id)

        assert await reconciler.ensure_customer(identity) == "cus_1"
        assert identity.customer_data.email == "jane@example.com"
        assert simulator.call_count("create_customer") == 0

    async def test_missing_customer_recreated(self, reconciler, simulator, make_user):
        identity = await reconciler.identity_for_user((await make_user(stripe_customer_id="cus_gone")).id)

        customer_id = await reconciler.ensure_customer(identity)

        assert customer_id != "cus_gone"
        assert simulator.call_count("create_customer") == 1

    async def test_deleted_customer_recreated(self, reconciler, simulator, make_user, db_session):
        simulator.add_customer(id="cus_gone", deleted=True)
        user = await make_user(stripe_customer_id="cus_gone")
        identity = await reconciler.identity_for_user(user.id)

        customer_id = await reconciler.ensure_customer(identity)

        assert customer_id != "cus_gone"
        assert customer_id in simulator.state.customers
        assert simulator.call_count("create_customer") == 1
        assert (await UserRepository(db_session).get_by_id(user.id)).stripe_customer_id == customer_id

    async def test_other_errors_propagate(self, reconciler, simulator, make_user):
        simulator.queue_error("retrieve_customer", "Invalid API Key provided", error_type="authentication_error")
        identity = await reconciler.identity_for_user((await make_user(stripe_customer_id="cus_1")).id)

        with pytest.raises(RemoteError):
            await reconciler.ensure_customer(identity)
        assert simulator.call_count("create_customer") == 0


class TestPaymentMethods:
    async def test_attach(self, reconciler, simulator, make_user):
        simulator.add_customer(id="cus_1")
        payment_method_id = simulator.add_payment_method("card", **card_data("fp_1"))
        identity = await reconciler.identity_for_user((await make_user(stripe_customer_id="cus_1")).id)

        payment_method = await reconciler.attach_payment_method(identity, payment_method_id)

        assert payment_method.customer == "cus_1"

    async def test_attach_already_attached_is_success(self, reconciler, simulator, make_user):
        simulator.add_customer(id="cus_1")
        payment_method_id = simulator.add_payment_method("card", customer="cus_other")
        identity = await reconciler.identity_for_user((await make_user(stripe_customer_id="cus_1")).id)

        payment_method = await reconciler.attach_payment_method(identity, payment_method_id)

        assert payment_method.id == payment_method_id
        assert simulator.call_count("retrieve_payment_method") == 1

    async def test_attach_recreates_missing_customer(self, reconciler, simulator, make_user):
        payment_method_id = simulator.add_payment_method("card")
        identity = await reconciler.identity_for_user((await make_user(stripe_customer_id="cus_gone")).id)

        payment_method = await reconciler.attach_payment_method(identity, payment_method_id)

        assert payment_method.customer == identity.customer_id
        assert identity.customer_id != "cus_gone"
        assert simulator.call_count("attach_payment_method") == 2

    async def test_detach_and_default(self, reconciler, simulator, make_user):
        simulator.add_customer(id="cus_1")
        payment_method_id = simulator.add_payment_method("card", customer="cus_1")
        identity = await reconciler.identity_for_user((await make_user(stripe_customer_id="cus_1")).id)

        assert await reconciler.set_default_payment_method(identity, payment_method_id)
        assert simulator.state.customers["cus_1"]["invoice_settings"] == {"default_payment_method": payment_method_id}

        assert await reconciler.detach_payment_method(identity, payment_method_id)
        assert not await reconciler.detach_payment_method(identity, "pm_missing")

    async def test_guest_cannot_detach(self, reconciler, simulator):
        assert not await reconciler.detach_payment_method(LocalIdentity(), "pm_1")
        assert simulator.call_count() == 0

    async def test_payment_methods_are_cached(self, reconciler, simulator, make_user, db_session):
        simulator.add_customer(id="cus_1")
        simulator.add_payment_method("card", customer="cus_1", **card_data("fp_1"))
        identity = await reconciler.identity_for_user((await make_user(stripe_customer_id="cus_1")).id)

        first = await reconciler.get_payment_methods(identity, "card")
        second = await reconciler.get_payment_methods(identity, "card")

        assert [pm.id for pm in first] == [pm.id for pm in second]
        assert second[0].card.fingerprint == "fp_1"
        assert simulator.call_count("list_payment_methods") == 1

        await reconciler.clear_cache(identity)
        assert await TransientCache(db_session).get(f"{PAYMENT_METHODS_CACHE_PREFIX}cardcus_1") is None

    async def test_listing_error_is_not_cached(self, reconciler, simulator, make_user):
        simulator.add_customer(id="cus_1")
        simulator.queue_error("list_payment_methods", "Server error", error_type="api_error")
        identity = await reconciler.identity_for_user((await make_user(stripe_customer_id="cus_1")).id)

        with pytest.raises(RemoteError):
            await reconciler.get_payment_methods(identity, "card")
        assert await reconciler.get_payment_methods(identity, "card") == []
        assert simulator.call_count("list_payment_methods") == 2
