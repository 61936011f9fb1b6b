"""Gateway configuration loaded from the environment and the options table."""

import os
import logging
from dataclasses import dataclass, field, replace
from typing import Optional, List, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from .connectors.base import PaymentMethods, REUSABLE_GATEWAYS_BY_PAYMENT_METHOD
from .database.repository import OptionRepository

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./stripe_gateway.db"

DEFAULT_REQUIRED_BILLING_FIELDS = [
    "billing_first_name",
    "billing_last_name",
    "billing_email",
    "billing_address_1",
    "billing_city",
    "billing_postcode",
    "billing_country",
    "billing_state",
]

# Orders in these statuses can no longer get a Stripe customer attached.
DEFAULT_DISALLOWED_CUSTOMER_ORDER_STATUSES = ["completed", "cancelled", "refunded", "failed"]

OPTIMIZED_CHECKOUT_OPTION = "optimized_checkout_enabled"
SEPA_TOKENS_FOR_OTHER_METHODS_OPTION = "sepa_tokens_for_other_methods_enabled"


def payment_method_option_name(payment_method_type: str) -> str:
    return f"payment_method_{payment_method_type}_enabled"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class GatewayConfig:
    """Runtime settings shared by the reconciler, synchronizer and capture flow."""
    stripe_api_key: Optional[str] = None
    api_key: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL
    enabled_payment_methods: List[str] = field(default_factory=lambda: [PaymentMethods.CARD])
    optimized_checkout: bool = False
    sepa_tokens_for_other_methods: bool = True
    tokens_page_size: int = 10
    payment_methods_cache_ttl: int = 86400
    required_billing_fields: List[str] = field(default_factory=lambda: list(DEFAULT_REQUIRED_BILLING_FIELDS))
    store_locale: str = "en_US"
    environment: str = "production"
    admin_context: bool = False
    disallowed_customer_order_statuses: List[str] = field(
        default_factory=lambda: list(DEFAULT_DISALLOWED_CUSTOMER_ORDER_STATUSES)
    )

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        return cls(
            stripe_api_key=os.getenv("STRIPE_API_KEY"),
            api_key=os.getenv("API_KEY"),
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            enabled_payment_methods=_env_list("STRIPE_ENABLED_PAYMENT_METHODS", [PaymentMethods.CARD]),
            optimized_checkout=_env_bool("STRIPE_OPTIMIZED_CHECKOUT", False),
            sepa_tokens_for_other_methods=_env_bool("STRIPE_SEPA_TOKENS_FOR_OTHER_METHODS", True),
            tokens_page_size=int(os.getenv("STRIPE_TOKENS_PAGE_SIZE", "10")),
            payment_methods_cache_ttl=int(os.getenv("STRIPE_PAYMENT_METHODS_CACHE_TTL", "86400")),
            required_billing_fields=_env_list("STRIPE_REQUIRED_BILLING_FIELDS", DEFAULT_REQUIRED_BILLING_FIELDS),
            store_locale=os.getenv("STORE_LOCALE", "en_US"),
            environment=os.getenv("APP_ENVIRONMENT", "production"),
            admin_context=_env_bool("STRIPE_ADMIN_CONTEXT", False),
        )

    @property
    def is_live(self) -> bool:
        """Live mode unless a test secret key is configured."""
        return not (self.stripe_api_key or "").startswith(("sk_test_", "rk_test_"))

    def is_enabled(self, payment_method_type: str) -> bool:
        return payment_method_type in self.enabled_payment_methods

    def should_detach_on_delete(self) -> bool:
        """Tokens deleted from an admin screen of a non-production copy keep their live payment method."""
        return not (self.is_live and self.admin_context and self.environment != "production")


async def load_gateway_config(
    session: AsyncSession,
    base: Optional[GatewayConfig] = None,
) -> GatewayConfig:
    """
    Merge the persisted feature flags over an environment based configuration.

    Args:
        session: Database session used to read the options table.
        base: Configuration to start from. Defaults to GatewayConfig.from_env().

    Returns:
        A new GatewayConfig with option overrides applied.
    """
    config = base or GatewayConfig.from_env()
    options: Dict[str, bool] = await OptionRepository(session).get_all()
    if not options:
        return config

    enabled = list(config.enabled_payment_methods)
    for payment_method_type in REUSABLE_GATEWAYS_BY_PAYMENT_METHOD:
        flag = options.get(payment_method_option_name(payment_method_type))
        if flag is True and payment_method_type not in enabled:
            enabled.append(payment_method_type)
        elif flag is False and payment_method_type in enabled:
            enabled.remove(payment_method_type)

    merged = replace(
        config,
        enabled_payment_methods=enabled,
        optimized_checkout=options.get(OPTIMIZED_CHECKOUT_OPTION, config.optimized_checkout),
        sepa_tokens_for_other_methods=options.get(
            SEPA_TOKENS_FOR_OTHER_METHODS_OPTION, config.sepa_tokens_for_other_methods
        ),
    )
    logger.debug(f"Loaded gateway config with enabled payment methods: {merged.enabled_payment_methods}")
    return merged
