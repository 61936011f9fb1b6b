"""SQLAlchemy models for users, orders, saved payment tokens and cached Stripe data."""

import json
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..connectors.base import (
    PaymentMethods,
    PaymentMethod,
    CardPaymentMethod,
    SepaDebitPaymentMethod,
    LinkPaymentMethod,
    UsBankAccountPaymentMethod,
    AcssDebitPaymentMethod,
    CashAppPaymentMethod,
    BacsDebitPaymentMethod,
    BecsDebitPaymentMethod,
)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class OrderStatus:
    """Store order statuses."""
    PENDING = "pending"
    PROCESSING = "processing"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class BillingFieldsMixin:
    """Billing and shipping address columns shared by users and orders."""
    billing_first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    billing_last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    billing_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    billing_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    billing_address_1: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    billing_address_2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    billing_city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    billing_state: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    billing_postcode: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    billing_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)

    shipping_first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipping_last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipping_address_1: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipping_address_2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipping_city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipping_state: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipping_postcode: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    shipping_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)


class User(BillingFieldsMixin, Base):
    """A registered store customer."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    locale: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # At most one Stripe customer per user.
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class Order(BillingFieldsMixin, Base):
    """A store order. Amounts are kept in minor units."""
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=OrderStatus.PENDING)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refunded_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    payment_method: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_method_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    stripe_charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_orders_status", "status"),
    )

    def has_status(self, statuses: List[str]) -> bool:
        return self.status in statuses

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "currency": self.currency,
            "total_amount": self.total_amount,
            "refunded_amount": self.refunded_amount,
            "payment_method": self.payment_method,
            "payment_method_title": self.payment_method_title,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_intent_id": self.stripe_intent_id,
            "stripe_charge_id": self.stripe_charge_id,
        }


class PaymentToken(Base):
    """
    A saved payment method reference. Concrete token types share this table
    and are told apart by ``type``.
    """
    __tablename__ = "payment_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    gateway_id: Mapped[str] = mapped_column(String(100), nullable=False)
    # Remote payment method id (pm_... or legacy src_...).
    token: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    payment_method_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    card_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    expiry_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    expiry_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fingerprint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bank_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    account_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    cashtag: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_payment_tokens_user_gateway", "user_id", "gateway_id"),
    )

    __mapper_args__ = {
        "polymorphic_on": "type",
        "polymorphic_identity": "token",
    }

    def stripe_payment_method_type(self) -> str:
        """The Stripe payment method type this token was created from."""
        return self.payment_method_type or self.type

    def populate_from_payment_method(self, payment_method: PaymentMethod) -> None:
        """Copy the display fields of a remote payment method onto the token."""

    def is_equal_payment_method(self, payment_method: PaymentMethod) -> bool:
        """Whether the remote payment method is the same instrument as this token."""
        return False

    def display_brand(self) -> Optional[str]:
        return None

    def display_name(self) -> str:
        brand = self.display_brand() or self.type
        if self.last4:
            return f"{brand} ending in {self.last4}"
        return brand

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "gateway_id": self.gateway_id,
            "token": self.token,
            "type": self.type,
            "is_default": self.is_default,
            "payment_method_type": self.payment_method_type,
            "card_type": self.card_type,
            "last4": self.last4,
            "expiry_month": self.expiry_month,
            "expiry_year": self.expiry_year,
            "fingerprint": self.fingerprint,
            "email": self.email,
            "bank_name": self.bank_name,
            "account_type": self.account_type,
            "cashtag": self.cashtag,
            "display_name": self.display_name(),
        }


def _same_fingerprint(token: PaymentToken, fingerprint: Optional[str]) -> bool:
    return bool(fingerprint) and token.fingerprint == fingerprint


class CardToken(PaymentToken):
    __mapper_args__ = {"polymorphic_identity": "CC"}

    def stripe_payment_method_type(self) -> str:
        return PaymentMethods.CARD

    def populate_from_payment_method(self, payment_method: PaymentMethod) -> None:
        card = payment_method.card
        self.expiry_month = card.exp_month
        self.expiry_year = card.exp_year
        self.card_type = card.brand_label()
        self.last4 = card.last4
        self.fingerprint = card.fingerprint

    def is_equal_payment_method(self, payment_method: PaymentMethod) -> bool:
        return (
            isinstance(payment_method, CardPaymentMethod)
            and _same_fingerprint(self, payment_method.card.fingerprint)
        )

    def display_brand(self) -> Optional[str]:
        return (self.card_type or "card").title()


class SepaToken(PaymentToken):
    """SEPA debit token. Also stores iDEAL, Bancontact and Sofort mandates."""
    __mapper_args__ = {"polymorphic_identity": "sepa"}

    def stripe_payment_method_type(self) -> str:
        # Tokens created before the type was recorded are plain SEPA debits.
        return self.payment_method_type or PaymentMethods.SEPA_DEBIT

    def populate_from_payment_method(self, payment_method: PaymentMethod) -> None:
        self.payment_method_type = payment_method.original_type()
        if isinstance(payment_method, SepaDebitPaymentMethod):
            self.last4 = payment_method.sepa_debit.last4
            self.fingerprint = payment_method.sepa_debit.fingerprint

    def is_equal_payment_method(self, payment_method: PaymentMethod) -> bool:
        return (
            isinstance(payment_method, SepaDebitPaymentMethod)
            and _same_fingerprint(self, payment_method.sepa_debit.fingerprint)
        )

    def display_brand(self) -> Optional[str]:
        return "SEPA IBAN"


class LinkToken(PaymentToken):
    __mapper_args__ = {"polymorphic_identity": "link"}

    def populate_from_payment_method(self, payment_method: PaymentMethod) -> None:
        self.email = payment_method.link.email
        self.payment_method_type = PaymentMethods.LINK

    def is_equal_payment_method(self, payment_method: PaymentMethod) -> bool:
        return (
            isinstance(payment_method, LinkPaymentMethod)
            and bool(payment_method.link.email)
            and self.email == payment_method.link.email
        )

    def display_brand(self) -> Optional[str]:
        return f"Stripe Link ({self.email or ''})"


class AmazonPayToken(PaymentToken):
    __mapper_args__ = {"polymorphic_identity": "amazon_pay"}

    def populate_from_payment_method(self, payment_method: PaymentMethod) -> None:
        self.email = payment_method.billing_details.email or ""

    def is_equal_payment_method(self, payment_method: PaymentMethod) -> bool:
        email = payment_method.billing_details.email
        return (
            payment_method.type == PaymentMethods.AMAZON_PAY
            and bool(email)
            and self.email == email
        )

    def display_brand(self) -> Optional[str]:
        return f"Amazon Pay ({self.email or ''})"


class AchToken(PaymentToken):
    __mapper_args__ = {"polymorphic_identity": PaymentMethods.ACH}

    def populate_from_payment_method(self, payment_method: PaymentMethod) -> None:
        details = payment_method.us_bank_account
        if details.last4 is not None:
            self.last4 = details.last4
        if details.fingerprint is not None:
            self.fingerprint = details.fingerprint
        if details.account_type is not None:
            self.account_type = details.account_type
        if details.bank_name is not None:
            self.bank_name = details.bank_name

    def is_equal_payment_method(self, payment_method: PaymentMethod) -> bool:
        return (
            isinstance(payment_method, UsBankAccountPaymentMethod)
            and _same_fingerprint(self, payment_method.us_bank_account.fingerprint)
        )

    def display_brand(self) -> Optional[str]:
        return self.bank_name


class AcssToken(PaymentToken):
    __mapper_args__ = {"polymorphic_identity": PaymentMethods.ACSS_DEBIT}

    def populate_from_payment_method(self, payment_method: PaymentMethod) -> None:
        details = payment_method.acss_debit
        if details.last4 is not None:
            self.last4 = details.last4
        if details.fingerprint is not None:
            self.fingerprint = details.fingerprint
        if details.bank_name is not None:
            self.bank_name = details.bank_name

    def is_equal_payment_method(self, payment_method: PaymentMethod) -> bool:
        return (
            isinstance(payment_method, AcssDebitPaymentMethod)
            and _same_fingerprint(self, payment_method.acss_debit.fingerprint)
        )

    def display_brand(self) -> Optional[str]:
        return self.bank_name


class CashAppToken(PaymentToken):
    __mapper_args__ = {"polymorphic_identity": PaymentMethods.CASHAPP_PAY}

    def populate_from_payment_method(self, payment_method: PaymentMethod) -> None:
        if payment_method.cashapp.cashtag is not None:
            self.cashtag = payment_method.cashapp.cashtag

    def is_equal_payment_method(self, payment_method: PaymentMethod) -> bool:
        return (
            isinstance(payment_method, CashAppPaymentMethod)
            and bool(payment_method.cashapp.cashtag)
            and self.cashtag == payment_method.cashapp.cashtag
        )

    def display_brand(self) -> Optional[str]:
        return "Cash App Pay"

    def display_name(self) -> str:
        if self.cashtag:
            return f"Cash App Pay ({self.cashtag})"
        return "Cash App Pay"


class BacsDebitToken(PaymentToken):
    __mapper_args__ = {"polymorphic_identity": PaymentMethods.BACS_DEBIT}

    def populate_from_payment_method(self, payment_method: PaymentMethod) -> None:
        self.last4 = payment_method.bacs_debit.last4
        self.fingerprint = payment_method.bacs_debit.fingerprint
        self.payment_method_type = PaymentMethods.BACS_DEBIT

    def is_equal_payment_method(self, payment_method: PaymentMethod) -> bool:
        return (
            isinstance(payment_method, BacsDebitPaymentMethod)
            and _same_fingerprint(self, payment_method.bacs_debit.fingerprint)
        )

    def display_brand(self) -> Optional[str]:
        return "Bacs Direct Debit"


class BecsDebitToken(PaymentToken):
    __mapper_args__ = {"polymorphic_identity": PaymentMethods.BECS_DEBIT}

    def populate_from_payment_method(self, payment_method: PaymentMethod) -> None:
        details = payment_method.au_becs_debit
        if details.last4 is not None:
            self.last4 = details.last4
        if details.fingerprint is not None:
            self.fingerprint = details.fingerprint

    def is_equal_payment_method(self, payment_method: PaymentMethod) -> bool:
        return (
            isinstance(payment_method, BecsDebitPaymentMethod)
            and _same_fingerprint(self, payment_method.au_becs_debit.fingerprint)
        )

    def display_brand(self) -> Optional[str]:
        return "BECS Direct Debit"


# Originating payment method type -> local token class. Anything else is
# stored as a SEPA style token.
TOKEN_CLASSES_BY_PAYMENT_METHOD = {
    PaymentMethods.CARD: CardToken,
    PaymentMethods.BACS_DEBIT: BacsDebitToken,
    PaymentMethods.LINK: LinkToken,
    PaymentMethods.AMAZON_PAY: AmazonPayToken,
    PaymentMethods.ACH: AchToken,
    PaymentMethods.ACSS_DEBIT: AcssToken,
    PaymentMethods.CASHAPP_PAY: CashAppToken,
    PaymentMethods.BECS_DEBIT: BecsDebitToken,
}


def token_class_for(payment_method_type: str) -> type:
    return TOKEN_CLASSES_BY_PAYMENT_METHOD.get(payment_method_type, SepaToken)


class CacheEntry(Base):
    """Time-boxed cache of remote lookups. Expired rows read as misses."""
    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_cache_entries_expires_at", "expires_at"),
    )

    @property
    def value(self) -> Any:
        """Get the cached value."""
        if self.value_json is not None:
            return json.loads(self.value_json)
        return None

    @value.setter
    def value(self, value: Any) -> None:
        """Set the cached value."""
        if value is not None:
            self.value_json = json.dumps(value)
        else:
            self.value_json = None

    def is_expired(self) -> bool:
        """Check if the cache entry has expired."""
        return datetime.utcnow() > self.expires_at


class Option(Base):
    """Boolean feature flag keyed by name."""
    __tablename__ = "options"

    name: Mapped[str] = mapped_column(String(191), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
