"""Customer reconciliation between local users/orders and Stripe customers."""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from .config import GatewayConfig, DEFAULT_REQUIRED_BILLING_FIELDS
from .connectors.base import (
    StripeClientBase,
    RemoteCustomer,
    PaymentMethod,
    QUERYABLE_PAYMENT_METHOD_TYPES,
    parse_payment_method,
)
from .database.models import User, Order
from .database.repository import UserRepository, TransientCache
from .errors import CustomerValidationError, CustomerIdRequired, RemoteError

logger = logging.getLogger(__name__)

PAYMENT_METHODS_CACHE_PREFIX = "stripe_payment_methods_"
SOURCES_CACHE_PREFIX = "stripe_sources_"
CUSTOMER_CACHE_PREFIX = "stripe_customer_"
PAYMENT_METHOD_FOR_SOURCE_PREFIX = "payment_method_for_source_"

# Store locale -> Stripe customer email locale.
STRIPE_LOCALES = {
    "ar": "ar-AR",
    "da_DK": "da-DK",
    "de_CH": "de-DE",
    "de_CH_informal": "de-DE",
    "de_DE": "de-DE",
    "de_DE_formal": "de-DE",
    "en": "en-US",
    "es_ES": "es-ES",
    "es_CL": "es-419",
    "es_AR": "es-419",
    "es_CO": "es-419",
    "es_PE": "es-419",
    "es_UY": "es-419",
    "es_PR": "es-419",
    "es_GT": "es-419",
    "es_EC": "es-419",
    "es_MX": "es-419",
    "es_VE": "es-419",
    "es_CR": "es-419",
    "fi": "fi-FI",
    "fr_FR": "fr-FR",
    "he_IL": "he-IL",
    "it_IT": "it-IT",
    "ja": "ja-JP",
    "nl_NL": "nl-NL",
    "nn_NO": "no-NO",
    "pt_BR": "pt-BR",
    "sv_SE": "sv-SE",
}
DEFAULT_STRIPE_LOCALE = "en-US"

# Checkout billing field -> Stripe address field.
ADDRESS_FIELD_MAPPING = {
    "billing_address_1": "line1",
    "billing_address_2": "line2",
    "billing_city": "city",
    "billing_country": "country",
    "billing_postcode": "postal_code",
    "billing_state": "state",
}

BILLING_FORM_FIELDS = [
    "billing_email",
    "billing_first_name",
    "billing_last_name",
    "billing_address_1",
    "billing_address_2",
    "billing_postcode",
    "billing_city",
    "billing_state",
    "billing_country",
]


@dataclass
class LocalIdentity:
    """A registered user or a guest, plus the Stripe customer id cached for it."""
    user: Optional[User] = None
    customer_id: Optional[str] = None
    customer_data: Optional[RemoteCustomer] = None

    @property
    def user_id(self) -> int:
        return self.user.id if self.user is not None else 0

    @property
    def is_guest(self) -> bool:
        return self.user is None


class RequiredFieldsPolicy:
    """Decides which customer fields must be present before creating a Stripe customer."""

    def __init__(self, required_billing_fields: Optional[Iterable[str]] = None):
        if required_billing_fields is None:
            required_billing_fields = DEFAULT_REQUIRED_BILLING_FIELDS
        self.required_billing_fields = set(required_billing_fields)

    def required_fields(self, is_add_payment_method_page: bool = False) -> Dict[str, Any]:
        """
        Map the checkout's required billing fields to Stripe customer fields.

        Args:
            is_add_payment_method_page: Only the email is required when a
                customer saves a payment method from their account page.

        Returns:
            ``{field: True}`` for top level fields and ``{"address": {sub: True}}``
            for address fields.
        """
        if is_add_payment_method_page:
            return {"email": True}

        required: Dict[str, Any] = {}
        if "billing_email" in self.required_billing_fields:
            required["email"] = True
        if {"billing_first_name", "billing_last_name"} & self.required_billing_fields:
            required["name"] = True

        address = {
            stripe_field: True
            for field, stripe_field in ADDRESS_FIELD_MAPPING.items()
            if field in self.required_billing_fields
        }
        if address:
            required["address"] = address
        return required


class CustomerArgsPolicy:
    """Final say over the arguments sent when creating or updating a customer."""

    def create_args(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return args

    def update_args(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return args


class MetadataPolicy:
    """Adds metadata to new and updated Stripe customers."""

    def enrich(self, metadata: Dict[str, Any], user: Optional[User]) -> Dict[str, Any]:
        return metadata


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def validate_customer_request(request: Dict[str, Any], required_fields: Dict[str, Any]) -> None:
    """
    Check a customer request against required fields.

    Raises:
        CustomerValidationError: Naming the first missing field, ``address->line1``
            style for nested fields.
    """
    for field, requirement in required_fields.items():
        if requirement is True and _is_blank(request.get(field)):
            raise CustomerValidationError(field)
        if isinstance(requirement, dict):
            nested = request.get(field)
            if not isinstance(nested, dict):
                raise CustomerValidationError(field)
            for sub_field, sub_requirement in requirement.items():
                if sub_requirement is True and _is_blank(nested.get(sub_field)):
                    raise CustomerValidationError(f"{field}->{sub_field}")


def _join_name(first: Optional[str], last: Optional[str]) -> str:
    return f"{first or ''} {last or ''}"


class CustomerReconciler:
    """
    Produces a valid Stripe customer id for a local identity, recreating the
    customer once when Stripe no longer knows the cached id.
    """

    def __init__(
        self,
        session: AsyncSession,
        client: StripeClientBase,
        config: Optional[GatewayConfig] = None,
        required_fields_policy: Optional[RequiredFieldsPolicy] = None,
        args_policy: Optional[CustomerArgsPolicy] = None,
        metadata_policy: Optional[MetadataPolicy] = None,
    ):
        self.session = session
        self.client = client
        self.config = config or GatewayConfig()
        self.required_fields_policy = required_fields_policy or RequiredFieldsPolicy(
            self.config.required_billing_fields
        )
        self.args_policy = args_policy or CustomerArgsPolicy()
        self.metadata_policy = metadata_policy or MetadataPolicy()
        self.users = UserRepository(session)
        self.cache = TransientCache(session)

    # Identities

    async def identity_for_user(self, user_id: int) -> LocalIdentity:
        """Load a user and its stored customer id. ``0`` or an unknown id is a guest."""
        user = await self.users.get_by_id(user_id)
        if user is None:
            return LocalIdentity()
        return LocalIdentity(user=user, customer_id=user.stripe_customer_id or None)

    async def identity_for_order(self, order: Order) -> LocalIdentity:
        """Identity of an order's customer, falling back to the id stored on the order."""
        user = await self.users.get_by_id(order.user_id or 0)
        customer_id = user.stripe_customer_id if user is not None else None
        return LocalIdentity(user=user, customer_id=customer_id or order.stripe_customer_id or None)

    # Payload

    def preferred_locales(self, user: Optional[User]) -> List[str]:
        locale = (user.locale if user is not None else None) or self.config.store_locale
        return [STRIPE_LOCALES.get(locale, DEFAULT_STRIPE_LOCALE)]

    def generate_customer_request(
        self,
        identity: LocalIdentity,
        args: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Build create/update arguments for a customer.

        Values are taken from, in order of priority: explicit ``args``, the
        order passed as ``args["order"]``, the user's profile, and the raw
        checkout form fields passed as ``args["form_fields"]``.

        Args:
            identity: The local identity the customer belongs to.
            args: Explicit Stripe customer fields plus the optional ``order``
                and ``form_fields`` sources.

        Returns:
            Customer arguments ready for the policies and the API.
        """
        args = dict(args or {})
        order: Optional[Order] = args.pop("order", None)
        form_fields: Dict[str, Any] = args.pop("form_fields", None) or {}
        user = identity.user

        def billing_field(name: str) -> str:
            for source in (order, user):
                value = getattr(source, name, None) if source is not None else None
                if not _is_blank(value):
                    return value
            if name in BILLING_FORM_FIELDS and not _is_blank(form_fields.get(name)):
                return str(form_fields[name]).strip()
            return ""

        first_name = billing_field("billing_first_name")
        last_name = billing_field("billing_last_name")
        if user is not None:
            first_name = first_name or user.first_name or ""
            last_name = last_name or user.last_name or ""
            description = f"Name: {first_name} {last_name}, Username: {user.username}"
            email = (order.billing_email if order is not None else None) or user.email
        else:
            description = f"Name: {first_name} {last_name}, Guest"
            email = billing_field("billing_email")

        defaults: Dict[str, Any] = {
            "email": email,
            "description": description,
        }
        full_name = f"{first_name} {last_name}".strip()
        if full_name:
            defaults["name"] = full_name

        defaults["metadata"] = self.metadata_policy.enrich({}, user)
        defaults["preferred_locales"] = self.preferred_locales(user)
        defaults["address"] = {
            stripe_field: billing_field(field)
            for field, stripe_field in ADDRESS_FIELD_MAPPING.items()
        }

        return {**defaults, **args}

    @staticmethod
    def map_customer_data(order: Optional[Order] = None, user: Optional[User] = None) -> Dict[str, Any]:
        """Customer fields from an order or a user profile. Order data takes precedence."""
        if order is None and user is None:
            return {}

        source = order if order is not None else user
        name = _join_name(source.billing_first_name, source.billing_last_name)
        if user is not None and user.username:
            description = f"Name: {name}, Username: {user.username}"
        else:
            description = f"Name: {name}, Guest"

        data: Dict[str, Any] = {
            "name": name,
            "description": description,
            "email": source.billing_email or "",
            "phone": source.billing_phone or "",
            "address": {
                "line1": source.billing_address_1 or "",
                "line2": source.billing_address_2 or "",
                "postal_code": source.billing_postcode or "",
                "city": source.billing_city or "",
                "state": source.billing_state or "",
                "country": source.billing_country or "",
            },
        }

        if source.shipping_postcode:
            data["shipping"] = {
                "name": _join_name(source.shipping_first_name, source.shipping_last_name),
                "address": {
                    "line1": source.shipping_address_1 or "",
                    "line2": source.shipping_address_2 or "",
                    "postal_code": source.shipping_postcode or "",
                    "city": source.shipping_city or "",
                    "state": source.shipping_state or "",
                    "country": source.shipping_country or "",
                },
            }

        return data

    # Remote customer lifecycle

    async def _store_customer(self, identity: LocalIdentity, customer: RemoteCustomer) -> None:
        identity.customer_id = customer.id
        await self.clear_cache(identity)
        identity.customer_data = customer
        if identity.user is not None:
            await self.users.set_stripe_customer_id(identity.user, customer.id)

    def get_existing_customer(self, email: str, name: str) -> Optional[RemoteCustomer]:
        """Find a customer by exact name and email. Search errors count as no match."""
        result = self.client.search_customers(f"name:'{name}' AND email:'{email}'")
        if not result.ok or not result.value:
            return None
        return result.value[0]

    async def create_customer(
        self,
        identity: LocalIdentity,
        args: Optional[Dict[str, Any]] = None,
        is_add_payment_method_page: bool = False,
    ) -> str:
        """
        Create the Stripe customer for an identity.

        Guests with both an email and a name reuse an existing customer with
        the same name and email, which is updated instead.

        Args:
            identity: The local identity. Its customer id is set on success.
            args: See generate_customer_request().
            is_add_payment_method_page: Relax required fields to the email only.

        Returns:
            The Stripe customer id.

        Raises:
            CustomerValidationError: A required field is missing. No remote call is made.
            RemoteError: Stripe rejected the request.
        """
        request = self.generate_customer_request(identity, args)

        existing = None
        if (
            not identity.customer_id
            and identity.is_guest
            and not _is_blank(request.get("email"))
            and not _is_blank(request.get("name"))
        ):
            existing = self.get_existing_customer(request["email"], request["name"])

        if existing is None:
            create_args = self.args_policy.create_args(request)
            validate_customer_request(
                create_args,
                self.required_fields_policy.required_fields(is_add_payment_method_page),
            )
            result = self.client.create_customer(create_args)
        else:
            logger.info(f"Reusing existing Stripe customer {existing.id} for guest")
            result = self.client.update_customer(existing.id, self.args_policy.update_args(request))

        if not result.ok:
            raise RemoteError.from_api_error(result.error)

        await self._store_customer(identity, result.value)
        logger.info(f"Stripe customer {result.value.id} stored for user {identity.user_id}")
        return result.value.id

    async def update_customer(
        self,
        identity: LocalIdentity,
        args: Optional[Dict[str, Any]] = None,
        is_retry: bool = False,
    ) -> str:
        """
        Update the identity's Stripe customer.

        When Stripe no longer knows the customer, it is recreated and the
        update retried exactly once.

        Raises:
            CustomerIdRequired: The identity has no cached customer id.
            RemoteError: Stripe rejected the update, or the retry failed too.
        """
        if not identity.customer_id:
            raise CustomerIdRequired()

        request = self.args_policy.update_args(self.generate_customer_request(identity, args))
        result = self.client.update_customer(identity.customer_id, request)

        if not result.ok:
            if result.error.is_no_such_customer() and not is_retry:
                logger.warning(f"Stripe customer {identity.customer_id} not found, recreating before retrying update")
                await self.recreate_customer(identity, args)
                return await self.update_customer(identity, args, is_retry=True)
            raise RemoteError.from_api_error(result.error)

        await self.clear_cache(identity)
        identity.customer_data = result.value
        logger.info(f"Updated Stripe customer {identity.customer_id}")
        return identity.customer_id

    async def recreate_customer(
        self,
        identity: LocalIdentity,
        args: Optional[Dict[str, Any]] = None,
        is_add_payment_method_page: bool = False,
    ) -> str:
        """Forget the cached customer id and create a new customer."""
        identity.customer_id = None
        if identity.user is not None:
            await self.users.set_stripe_customer_id(identity.user, None)
        return await self.create_customer(identity, args, is_add_payment_method_page)

    async def update_or_create_customer(
        self,
        identity: LocalIdentity,
        args: Optional[Dict[str, Any]] = None,
        is_add_payment_method_page: bool = False,
    ) -> str:
        if not identity.customer_id:
            return await self.recreate_customer(identity, args, is_add_payment_method_page)
        return await self.update_customer(identity, args)

    async def ensure_customer(
        self,
        identity: LocalIdentity,
        args: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Return a customer id that exists on Stripe, creating one if needed.

        Raises:
            CustomerValidationError: Creation needed but a required field is missing.
            RemoteError: Any remote failure other than a missing customer.
        """
        if not identity.customer_id:
            return await self.create_customer(identity, args)

        result = self.client.retrieve_customer(identity.customer_id)
        if not result.ok:
            if result.error.is_no_such_customer():
                logger.warning(f"Stripe customer {identity.customer_id} not found, recreating")
                return await self.recreate_customer(identity, args)
            raise RemoteError.from_api_error(result.error)

        if result.value.deleted:
            logger.warning(f"Stripe customer {identity.customer_id} was deleted, recreating")
            return await self.recreate_customer(identity, args)

        identity.customer_data = result.value
        return result.value.id

    # Payment methods

    async def attach_payment_method(
        self,
        identity: LocalIdentity,
        payment_method_id: str,
        is_retry: bool = False,
    ) -> PaymentMethod:
        """
        Attach a payment method to the identity's customer.

        A payment method already attached to a customer is fetched and
        returned as is.

        Raises:
            RemoteError: Stripe rejected the attach.
        """
        if not identity.customer_id:
            await self.create_customer(identity)

        result = self.client.attach_payment_method(payment_method_id, identity.customer_id)
        if not result.ok:
            if result.error.is_no_such_customer() and not is_retry:
                logger.warning(f"Stripe customer {identity.customer_id} not found, recreating before attaching")
                await self.recreate_customer(identity)
                return await self.attach_payment_method(identity, payment_method_id, is_retry=True)
            if result.error.is_already_attached():
                existing = self.client.retrieve_payment_method(payment_method_id)
                if not existing.ok:
                    raise RemoteError.from_api_error(existing.error)
                return existing.value
            raise RemoteError.from_api_error(result.error)

        await self.clear_cache(identity)
        return result.value

    async def detach_payment_method(self, identity: LocalIdentity, payment_method_id: str) -> bool:
        if not identity.customer_id:
            return False

        result = self.client.detach_payment_method(payment_method_id)
        await self.clear_cache(identity, payment_method_id)
        if not result.ok:
            logger.error(f"Failed to detach {payment_method_id}: {result.error.message}")
            return False
        logger.info(f"Detached {payment_method_id} from Stripe customer {identity.customer_id}")
        return True

    async def set_default_payment_method(self, identity: LocalIdentity, payment_method_id: str) -> bool:
        if not identity.customer_id:
            return False

        result = self.client.update_customer(
            identity.customer_id,
            {"invoice_settings": {"default_payment_method": payment_method_id}},
        )
        await self.clear_cache(identity)
        if not result.ok:
            logger.error(f"Failed to set default payment method {payment_method_id}: {result.error.message}")
            return False
        return True

    async def get_payment_methods(self, identity: LocalIdentity, payment_method_type: str) -> List[PaymentMethod]:
        """
        List the customer's saved payment methods of one type, cached per type and customer.

        Raises:
            RemoteError: The listing failed. Nothing is cached.
        """
        if not identity.customer_id:
            return []

        key = f"{PAYMENT_METHODS_CACHE_PREFIX}{payment_method_type}{identity.customer_id}"
        cached = await self.cache.get(key)
        if cached is not None:
            return [parse_payment_method(item) for item in cached]

        result = self.client.list_payment_methods(identity.customer_id, payment_method_type, limit=100)
        if not result.ok:
            raise RemoteError.from_api_error(result.error)

        await self.cache.set(
            key,
            [payment_method.model_dump(mode="json") for payment_method in result.value],
            ttl_seconds=self.config.payment_methods_cache_ttl,
        )
        return list(result.value)

    async def clear_cache(self, identity: LocalIdentity, payment_method_id: Optional[str] = None) -> None:
        customer_id = identity.customer_id or ""
        keys = [
            f"{SOURCES_CACHE_PREFIX}{customer_id}",
            f"{CUSTOMER_CACHE_PREFIX}{customer_id}",
        ]
        keys.extend(
            f"{PAYMENT_METHODS_CACHE_PREFIX}{payment_method_type}{customer_id}"
            for payment_method_type in QUERYABLE_PAYMENT_METHOD_TYPES
        )
        if payment_method_id:
            keys.append(f"{PAYMENT_METHOD_FOR_SOURCE_PREFIX}{payment_method_id}")
        await self.cache.delete(*keys)
        identity.customer_data = None
