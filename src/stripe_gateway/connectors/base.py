"""Canonical remote models and the client interface for the Stripe API.

Remote JSON is decoded once, here, into typed models. Payment methods are
decoded into one variant per Stripe type so callers can branch on the class
instead of probing for fields.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Union, Literal, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

NO_SUCH_CUSTOMER_PATTERN = re.compile(r"No such customer", re.IGNORECASE)
ALREADY_ATTACHED_PATTERN = re.compile(r"already been attached to a customer", re.IGNORECASE)


class PaymentMethods:
    """Stripe payment method type ids."""
    CARD = "card"
    LINK = "link"
    AMAZON_PAY = "amazon_pay"
    ACH = "us_bank_account"
    ACSS_DEBIT = "acss_debit"
    BACS_DEBIT = "bacs_debit"
    BECS_DEBIT = "au_becs_debit"
    BANCONTACT = "bancontact"
    CASHAPP_PAY = "cashapp"
    IDEAL = "ideal"
    SEPA_DEBIT = "sepa_debit"
    SOFORT = "sofort"
    # Local token type used for SEPA style tokens.
    SEPA = "sepa"


# Gateway id of the main card/wallet gateway.
UPE_GATEWAY_ID = "stripe"

# Reusable payment method type -> gateway id the local token is associated with.
REUSABLE_GATEWAYS_BY_PAYMENT_METHOD: Dict[str, str] = {
    PaymentMethods.CARD: UPE_GATEWAY_ID,
    PaymentMethods.LINK: UPE_GATEWAY_ID,
    PaymentMethods.AMAZON_PAY: UPE_GATEWAY_ID,
    PaymentMethods.ACH: f"{UPE_GATEWAY_ID}_{PaymentMethods.ACH}",
    PaymentMethods.BANCONTACT: f"{UPE_GATEWAY_ID}_{PaymentMethods.BANCONTACT}",
    PaymentMethods.IDEAL: f"{UPE_GATEWAY_ID}_{PaymentMethods.IDEAL}",
    PaymentMethods.SEPA_DEBIT: f"{UPE_GATEWAY_ID}_{PaymentMethods.SEPA_DEBIT}",
    PaymentMethods.SOFORT: f"{UPE_GATEWAY_ID}_{PaymentMethods.SOFORT}",
    PaymentMethods.CASHAPP_PAY: f"{UPE_GATEWAY_ID}_{PaymentMethods.CASHAPP_PAY}",
    PaymentMethods.BACS_DEBIT: f"{UPE_GATEWAY_ID}_{PaymentMethods.BACS_DEBIT}",
    PaymentMethods.ACSS_DEBIT: f"{UPE_GATEWAY_ID}_{PaymentMethods.ACSS_DEBIT}",
    PaymentMethods.BECS_DEBIT: f"{UPE_GATEWAY_ID}_{PaymentMethods.BECS_DEBIT}",
}

# Types whose saved payment methods can be listed on a Stripe customer.
QUERYABLE_PAYMENT_METHOD_TYPES = [
    PaymentMethods.CARD,
    PaymentMethods.LINK,
    PaymentMethods.SEPA_DEBIT,
    PaymentMethods.CASHAPP_PAY,
    PaymentMethods.ACH,
    PaymentMethods.ACSS_DEBIT,
    PaymentMethods.BACS_DEBIT,
    PaymentMethods.AMAZON_PAY,
    PaymentMethods.BECS_DEBIT,
]


def is_valid_payment_method_id(payment_method_id: str, payment_method_type: str = "") -> bool:
    """PaymentMethod ids (``pm_``) are always valid; legacy ``src_`` ids only for cards."""
    if payment_method_id.startswith("pm_"):
        return True
    return payment_method_id.startswith("src_") and payment_method_type == PaymentMethods.CARD


# Errors

class StripeApiError(BaseModel):
    """The ``error`` object of a failed Stripe response."""
    type: str = "api_error"
    message: str = ""
    code: Optional[str] = None
    param: Optional[str] = None

    def is_no_such_customer(self) -> bool:
        return self.type == "invalid_request_error" and bool(NO_SUCH_CUSTOMER_PATTERN.search(self.message))

    def is_already_attached(self) -> bool:
        return self.type == "invalid_request_error" and bool(ALREADY_ATTACHED_PATTERN.search(self.message))


@dataclass
class StripeResult(Generic[T]):
    """Outcome of a remote call: either a decoded value or the remote error."""
    value: Optional[T] = None
    error: Optional[StripeApiError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "StripeResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: StripeApiError) -> "StripeResult[T]":
        return cls(error=error)


# Customers

class Address(BaseModel):
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class ShippingDetails(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None


class RemoteCustomer(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    description: Optional[str] = None
    address: Optional[Address] = None
    shipping: Optional[ShippingDetails] = None
    preferred_locales: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    deleted: bool = False


# Payment methods

class BillingDetails(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None


class CardNetworks(BaseModel):
    preferred: Optional[str] = None
    available: List[str] = Field(default_factory=list)


class CardDetails(BaseModel):
    brand: str = ""
    display_brand: Optional[str] = None
    networks: Optional[CardNetworks] = None
    last4: str = ""
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    fingerprint: Optional[str] = None

    def brand_label(self) -> str:
        """Brand to show the customer: display brand, then preferred network, then brand."""
        preferred = self.networks.preferred if self.networks else None
        return (self.display_brand or preferred or self.brand or "").lower()


class ProvenanceDetails(BaseModel):
    type: str


class ProvenanceObject(BaseModel):
    id: Optional[str] = None
    payment_method_details: Optional[ProvenanceDetails] = None


class GeneratedFrom(BaseModel):
    # Expanded objects decode to ProvenanceObject, unexpanded ones stay as ids.
    charge: Optional[Union[ProvenanceObject, str]] = None
    setup_attempt: Optional[Union[ProvenanceObject, str]] = None


class SepaDebitDetails(BaseModel):
    last4: Optional[str] = None
    fingerprint: Optional[str] = None
    bank_code: Optional[str] = None
    country: Optional[str] = None
    generated_from: Optional[GeneratedFrom] = None


class LinkDetails(BaseModel):
    email: Optional[str] = None


class UsBankAccountDetails(BaseModel):
    last4: Optional[str] = None
    fingerprint: Optional[str] = None
    account_type: Optional[str] = None
    bank_name: Optional[str] = None


class AcssDebitDetails(BaseModel):
    last4: Optional[str] = None
    fingerprint: Optional[str] = None
    bank_name: Optional[str] = None


class CashAppDetails(BaseModel):
    cashtag: Optional[str] = None
    buyer_id: Optional[str] = None


class BacsDebitDetails(BaseModel):
    last4: Optional[str] = None
    fingerprint: Optional[str] = None
    sort_code: Optional[str] = None


class BecsDebitDetails(BaseModel):
    last4: Optional[str] = None
    fingerprint: Optional[str] = None
    bsb_number: Optional[str] = None


class PaymentMethodBase(BaseModel):
    id: str
    type: str
    customer: Optional[str] = None
    created: Optional[int] = None
    billing_details: BillingDetails = Field(default_factory=BillingDetails)

    def original_type(self) -> str:
        """The payment method type the customer actually used."""
        return self.type


class CardPaymentMethod(PaymentMethodBase):
    type: Literal["card"] = "card"
    card: CardDetails = Field(default_factory=CardDetails)


class SepaDebitPaymentMethod(PaymentMethodBase):
    type: Literal["sepa_debit"] = "sepa_debit"
    sepa_debit: SepaDebitDetails = Field(default_factory=SepaDebitDetails)

    def original_type(self) -> str:
        # iDEAL, Bancontact and Sofort payment methods are stored as SEPA debits;
        # the APM behind them is recorded in the generated_from provenance.
        generated_from = self.sepa_debit.generated_from
        if generated_from is not None:
            for source in (generated_from.charge, generated_from.setup_attempt):
                if isinstance(source, ProvenanceObject) and source.payment_method_details:
                    return source.payment_method_details.type
        return self.type


class LinkPaymentMethod(PaymentMethodBase):
    type: Literal["link"] = "link"
    link: LinkDetails = Field(default_factory=LinkDetails)


class AmazonPayPaymentMethod(PaymentMethodBase):
    type: Literal["amazon_pay"] = "amazon_pay"


class UsBankAccountPaymentMethod(PaymentMethodBase):
    type: Literal["us_bank_account"] = "us_bank_account"
    us_bank_account: UsBankAccountDetails = Field(default_factory=UsBankAccountDetails)


class AcssDebitPaymentMethod(PaymentMethodBase):
    type: Literal["acss_debit"] = "acss_debit"
    acss_debit: AcssDebitDetails = Field(default_factory=AcssDebitDetails)


class CashAppPaymentMethod(PaymentMethodBase):
    type: Literal["cashapp"] = "cashapp"
    cashapp: CashAppDetails = Field(default_factory=CashAppDetails)


class BacsDebitPaymentMethod(PaymentMethodBase):
    type: Literal["bacs_debit"] = "bacs_debit"
    bacs_debit: BacsDebitDetails = Field(default_factory=BacsDebitDetails)


class BecsDebitPaymentMethod(PaymentMethodBase):
    type: Literal["au_becs_debit"] = "au_becs_debit"
    au_becs_debit: BecsDebitDetails = Field(default_factory=BecsDebitDetails)


class GenericPaymentMethod(PaymentMethodBase):
    """Any payment method type without a dedicated variant."""


PaymentMethod = Union[
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
]

PAYMENT_METHOD_MODELS = {
    PaymentMethods.CARD: CardPaymentMethod,
    PaymentMethods.SEPA_DEBIT: SepaDebitPaymentMethod,
    PaymentMethods.LINK: LinkPaymentMethod,
    PaymentMethods.AMAZON_PAY: AmazonPayPaymentMethod,
    PaymentMethods.ACH: UsBankAccountPaymentMethod,
    PaymentMethods.ACSS_DEBIT: AcssDebitPaymentMethod,
    PaymentMethods.CASHAPP_PAY: CashAppPaymentMethod,
    PaymentMethods.BACS_DEBIT: BacsDebitPaymentMethod,
    PaymentMethods.BECS_DEBIT: BecsDebitPaymentMethod,
}


def parse_payment_method(data: Dict[str, Any]) -> PaymentMethod:
    """Decode a raw Stripe PaymentMethod into its variant."""
    model = PAYMENT_METHOD_MODELS.get(data.get("type"), GenericPaymentMethod)
    return model.model_validate(data)


# Payment intents

class PaymentIntent(BaseModel):
    id: str
    status: Optional[str] = None
    amount: int = 0
    amount_received: int = 0
    currency: str = ""
    customer: Optional[str] = None
    payment_method: Optional[Union[str, Dict[str, Any]]] = None
    latest_charge: Optional[Union[str, Dict[str, Any]]] = None
    capture_method: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def latest_charge_id(self) -> Optional[str]:
        if isinstance(self.latest_charge, dict):
            return self.latest_charge.get("id")
        return self.latest_charge

    @property
    def payment_method_id(self) -> Optional[str]:
        if isinstance(self.payment_method, dict):
            return self.payment_method.get("id")
        return self.payment_method


class StripeClientBase(ABC):
    """
    Interface to the remote payment API. Implementations never raise for
    remote failures; they return a StripeResult carrying the decoded error.
    """

    @abstractmethod
    def retrieve_customer(self, customer_id: str) -> StripeResult[RemoteCustomer]:
        raise NotImplementedError

    @abstractmethod
    def create_customer(self, params: Dict[str, Any]) -> StripeResult[RemoteCustomer]:
        raise NotImplementedError

    @abstractmethod
    def update_customer(self, customer_id: str, params: Dict[str, Any]) -> StripeResult[RemoteCustomer]:
        raise NotImplementedError

    @abstractmethod
    def search_customers(self, query: str) -> StripeResult[List[RemoteCustomer]]:
        raise NotImplementedError

    @abstractmethod
    def list_payment_methods(
        self,
        customer_id: str,
        payment_method_type: str,
        limit: int = 100,
    ) -> StripeResult[List[PaymentMethod]]:
        raise NotImplementedError

    @abstractmethod
    def retrieve_payment_method(self, payment_method_id: str) -> StripeResult[PaymentMethod]:
        raise NotImplementedError

    @abstractmethod
    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> StripeResult[PaymentMethod]:
        raise NotImplementedError

    @abstractmethod
    def detach_payment_method(self, payment_method_id: str) -> StripeResult[PaymentMethod]:
        raise NotImplementedError

    @abstractmethod
    def retrieve_payment_intent(self, intent_id: str) -> StripeResult[PaymentIntent]:
        raise NotImplementedError

    @abstractmethod
    def capture_payment_intent(
        self,
        intent_id: str,
        amount_to_capture: Optional[int] = None,
    ) -> StripeResult[PaymentIntent]:
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True}
