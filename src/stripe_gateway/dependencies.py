"""FastAPI dependencies wiring the session, Stripe client and services per request."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from .config import GatewayConfig, load_gateway_config
from .connectors.base import StripeClientBase
from .connectors.stripe_connector import StripeClient
from .customers import CustomerReconciler
from .database import get_db
from .orders import OrderService
from .tokens import TokenSynchronizer


def get_settings() -> GatewayConfig:
    return GatewayConfig.from_env()


async def get_config(
    db: AsyncSession = Depends(get_db),
    settings: GatewayConfig = Depends(get_settings),
) -> GatewayConfig:
    return await load_gateway_config(db, settings)


def get_stripe_client(settings: GatewayConfig = Depends(get_settings)) -> StripeClientBase:
    return StripeClient(api_key=settings.stripe_api_key)


def get_customer_reconciler(
    db: AsyncSession = Depends(get_db),
    client: StripeClientBase = Depends(get_stripe_client),
    config: GatewayConfig = Depends(get_config),
) -> CustomerReconciler:
    return CustomerReconciler(db, client, config)


def get_token_synchronizer(
    db: AsyncSession = Depends(get_db),
    client: StripeClientBase = Depends(get_stripe_client),
    config: GatewayConfig = Depends(get_config),
    customers: CustomerReconciler = Depends(get_customer_reconciler),
) -> TokenSynchronizer:
    return TokenSynchronizer(db, client, config, customers=customers)


def get_order_service(
    db: AsyncSession = Depends(get_db),
    client: StripeClientBase = Depends(get_stripe_client),
    config: GatewayConfig = Depends(get_config),
    customers: CustomerReconciler = Depends(get_customer_reconciler),
) -> OrderService:
    return OrderService(db, client, config, customers=customers)
