"""Tests for database models and repository layer."""

import pytest
from datetime import datetime, timedelta

from stripe_gateway.connectors.base import parse_payment_method
from stripe_gateway.database import (
    CacheEntry,
    CardToken,
    CashAppToken,
    LinkToken,
    OrderStatus,
    PaymentToken,
    SepaToken,
    OptionRepository,
    OrderRepository,
    PaymentTokenRepository,
    TransientCache,
    UserRepository,
    token_class_for,
)


class TestUserRepository:
    async def test_create_and_get(self, db_session):
        repo = UserRepository(db_session)
        user = await repo.create("jane", "jane@example.com", first_name="Jane")

        assert user.id is not None
        fetched = await repo.get_by_id(user.id)
        assert fetched.username == "jane"
        assert fetched.stripe_customer_id is None

    async def test_guest_id_is_none(self, db_session):
        assert await UserRepository(db_session).get_by_id(0) is None

    async def test_set_and_clear_customer_id(self, db_session, make_user):
        user = await make_user()
        repo = UserRepository(db_session)

        await repo.set_stripe_customer_id(user, "cus_123")
        assert (await repo.get_by_id(user.id)).stripe_customer_id == "cus_123"

        await repo.set_stripe_customer_id(user, None)
        assert user.stripe_customer_id is None


class TestOrderRepository:
    async def test_amounts_stored_in_minor_units(self, db_session):
        order = await OrderRepository(db_session).create("usd", "12.00", total_refunded="2.50")
        assert order.currency == "USD"
        assert order.total_amount == 1200
        assert order.refunded_amount == 250
        assert order.status == OrderStatus.PENDING

    async def test_zero_decimal_currency(self, db_session):
        order = await OrderRepository(db_session).create("jpy", 1200)
        assert order.total_amount == 1200

    async def test_update_status(self, db_session, make_order):
        order = await make_order()
        await OrderRepository(db_session).update_status(order, OrderStatus.COMPLETED)
        assert order.has_status([OrderStatus.COMPLETED])
        assert order.to_dict()["status"] == "completed"


class TestPaymentTokens:
    async def test_polymorphic_loading(self, db_session, make_user):
        user = await make_user()
        repo = PaymentTokenRepository(db_session)
        await repo.add(CardToken(user_id=user.id, gateway_id="stripe", token="pm_card", last4="4242"))
        await repo.add(SepaToken(user_id=user.id, gateway_id="stripe_sepa_debit", token="pm_sepa"))
        await repo.add(CashAppToken(user_id=user.id, gateway_id="stripe_cashapp", token="pm_cash"))

        tokens = await repo.list_for_user(user.id)
        assert [type(t) for t in tokens] == [CardToken, SepaToken, CashAppToken]
        assert [t.type for t in tokens] == ["CC", "sepa", "cashapp"]

    async def test_list_filters(self, db_session, make_user):
        user = await make_user()
        other = await make_user()
        repo = PaymentTokenRepository(db_session)
        await repo.add(CardToken(user_id=user.id, gateway_id="stripe", token="pm_1"))
        await repo.add(LinkToken(user_id=user.id, gateway_id="stripe", token="pm_2", email="j@example.com"))
        await repo.add(SepaToken(user_id=user.id, gateway_id="stripe_sepa_debit", token="pm_3"))
        await repo.add(CardToken(user_id=other.id, gateway_id="stripe", token="pm_4"))

        assert len(await repo.list_for_user(user.id)) == 3
        assert len(await repo.list_for_user(user.id, gateway_id="stripe")) == 2
        assert len(await repo.list_for_user(user.id, gateway_id="stripe", token_type="link")) == 1
        assert len(await repo.list_for_user(user.id, limit=1)) == 1

    async def test_set_default_is_exclusive_per_gateway(self, db_session, make_user):
        user = await make_user()
        repo = PaymentTokenRepository(db_session)
        first = await repo.add(CardToken(user_id=user.id, gateway_id="stripe", token="pm_1", is_default=True))
        second = await repo.add(CardToken(user_id=user.id, gateway_id="stripe", token="pm_2"))

        await repo.set_default(second)
        assert second.is_default is True
        assert first.is_default is False

    async def test_delete(self, db_session, make_user):
        user = await make_user()
        repo = PaymentTokenRepository(db_session)
        token = await repo.add(CardToken(user_id=user.id, gateway_id="stripe", token="pm_1"))
        token_id = token.id

        await repo.delete(token)
        assert await repo.get_by_id(token_id) is None


class TestTokenModels:
    def test_card_token_from_payment_method(self):
        payment_method = parse_payment_method({
            "id": "pm_1",
            "type": "card",
            "card": {
                "brand": "visa",
                "display_brand": "cartes_bancaires",
                "last4": "4242",
                "exp_month": 4,
                "exp_year": 2031,
                "fingerprint": "fp_1",
            },
        })
        token = CardToken(user_id=1, gateway_id="stripe", token="pm_1")
        token.populate_from_payment_method(payment_method)

        assert token.card_type == "cartes_bancaires"
        assert token.last4 == "4242"
        assert token.expiry_month == 4
        assert token.is_equal_payment_method(payment_method)

    def test_missing_fingerprint_never_matches(self):
        payment_method = parse_payment_method({"id": "pm_1", "type": "card", "card": {"last4": "4242"}})
        token = CardToken(user_id=1, gateway_id="stripe", token="pm_1")
        assert not token.is_equal_payment_method(payment_method)

    def test_sepa_token_records_original_type(self):
        payment_method = parse_payment_method({
            "id": "pm_1",
            "type": "sepa_debit",
            "sepa_debit": {
                "last4": "3000",
                "fingerprint": "fp_sepa",
                "generated_from": {
                    "setup_attempt": {"payment_method_details": {"type": "bancontact"}},
                },
            },
        })
        token = token_class_for(payment_method.original_type())(user_id=1, gateway_id="stripe_bancontact", token="pm_1")
        token.populate_from_payment_method(payment_method)

        assert isinstance(token, SepaToken)
        assert token.payment_method_type == "bancontact"
        assert token.stripe_payment_method_type() == "bancontact"
        assert token.display_name() == "SEPA IBAN ending in 3000"

    def test_cashapp_display_name(self):
        token = CashAppToken(user_id=1, gateway_id="stripe_cashapp", token="pm_1", cashtag="$jane")
        assert token.display_name() == "Cash App Pay ($jane)"

    def test_base_token_never_equal(self):
        payment_method = parse_payment_method({"id": "pm_1", "type": "card"})
        assert not PaymentToken(user_id=1, gateway_id="stripe", token="pm_1").is_equal_payment_method(payment_method)


class TestTransientCache:
    async def test_set_and_get(self, db_session):
        cache = TransientCache(db_session)
        await cache.set("key", [{"id": "pm_1"}])
        assert await cache.get("key") == [{"id": "pm_1"}]

    async def test_miss(self, db_session):
        assert await TransientCache(db_session).get("missing") is None

    async def test_expired_entry_reads_as_miss(self, db_session):
        db_session.add(CacheEntry(
            key="old",
            value_json="[1]",
            expires_at=datetime.utcnow() - timedelta(seconds=1),
        ))
        await db_session.flush()

        cache = TransientCache(db_session)
        assert await cache.get("old") is None
        assert await db_session.get(CacheEntry, "old") is None

    async def test_overwrite(self, db_session):
        cache = TransientCache(db_session)
        await cache.set("key", "first")
        await cache.set("key", "second")
        assert await cache.get("key") == "second"

    async def test_delete(self, db_session):
        cache = TransientCache(db_session)
        await cache.set("a", 1)
        await cache.set("b", 2)

        assert await cache.delete("a", "b", "c") == 2
        assert await cache.get("a") is None


class TestOptionRepository:
    async def test_get_default_and_set(self, db_session):
        repo = OptionRepository(db_session)
        assert await repo.get("payment_method_link_enabled") is False
        assert await repo.get("payment_method_link_enabled", default=True) is True

        await repo.set("payment_method_link_enabled", True)
        assert await repo.get("payment_method_link_enabled") is True
        assert await repo.get_all() == {"payment_method_link_enabled": True}
