"""Repository layer for users, orders, payment tokens, cache entries and options."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List, Union

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..currency import to_minor_units
from .models import (
    User,
    Order,
    OrderStatus,
    PaymentToken,
    CacheEntry,
    Option,
)

logger = logging.getLogger(__name__)

# One day, matching Stripe's own payment method list caching.
DEFAULT_CACHE_TTL_SECONDS = 86400


class UserRepository:
    """Repository for User CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(self, username: str, email: str, **fields: Any) -> User:
        """Create a new user.

        Args:
            username: Unique login name.
            email: Account email address.
            **fields: Profile, billing and shipping columns.

        Returns:
            Created User instance.
        """
        user = User(username=username, email=email, **fields)
        self.session.add(user)
        await self.session.flush()
        logger.info(f"Created user {user.id} ({username})")
        return user

    async def get_by_id(self, user_id: int) -> Optional[User]:
        if not user_id:
            return None
        return await self.session.get(User, user_id)

    async def set_stripe_customer_id(self, user: User, customer_id: Optional[str]) -> User:
        """Store (or clear, with None) the single Stripe customer id of a user."""
        user.stripe_customer_id = customer_id
        await self.session.flush()
        return user


class OrderRepository:
    """Repository for Order CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        currency: str,
        total: Union[Decimal, str, int, float],
        user_id: Optional[int] = None,
        status: str = OrderStatus.PENDING,
        total_refunded: Union[Decimal, str, int, float] = 0,
        **fields: Any,
    ) -> Order:
        """Create a new order.

        Args:
            currency: Three-letter currency code.
            total: Order total in major units, e.g. "12.00".
            user_id: Owning user, None for guest orders.
            status: Initial order status.
            total_refunded: Refunded total in major units.
            **fields: Billing, shipping and payment columns.

        Returns:
            Created Order instance.
        """
        order = Order(
            currency=currency.upper(),
            total_amount=to_minor_units(total, currency),
            refunded_amount=to_minor_units(total_refunded, currency),
            user_id=user_id or None,
            status=status,
            **fields,
        )
        self.session.add(order)
        await self.session.flush()
        logger.info(f"Created order {order.id} with status {status}")
        return order

    async def get_by_id(self, order_id: int) -> Optional[Order]:
        return await self.session.get(Order, order_id)

    async def update_status(self, order: Order, new_status: str) -> Order:
        """Update order status.

        Args:
            order: Order instance to update.
            new_status: New order status.

        Returns:
            Updated Order instance.
        """
        previous = order.status
        order.status = new_status
        order.updated_at = datetime.utcnow()
        await self.session.flush()
        logger.info(f"Updated order {order.id} status from {previous} to {new_status}")
        return order

    async def save(self, order: Order) -> Order:
        order.updated_at = datetime.utcnow()
        await self.session.flush()
        return order


class PaymentTokenRepository:
    """Repository for PaymentToken CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def add(self, token: PaymentToken) -> PaymentToken:
        """Persist a new token of any concrete type."""
        self.session.add(token)
        await self.session.flush()
        logger.info(f"Created {token.type} token {token.id} for user {token.user_id} on {token.gateway_id}")
        return token

    async def save(self, token: PaymentToken) -> PaymentToken:
        await self.session.flush()
        return token

    async def get_by_id(self, token_id: int) -> Optional[PaymentToken]:
        return await self.session.get(PaymentToken, token_id)

    async def list_for_user(
        self,
        user_id: int,
        gateway_id: Optional[str] = None,
        token_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PaymentToken]:
        """List a user's tokens, oldest first.

        Args:
            user_id: Owning user.
            gateway_id: Restrict to one gateway association.
            token_type: Restrict to one token type.
            limit: Maximum number of results.

        Returns:
            List of PaymentToken instances of their concrete types.
        """
        query = select(PaymentToken).where(PaymentToken.user_id == user_id)
        if gateway_id:
            query = query.where(PaymentToken.gateway_id == gateway_id)
        if token_type:
            query = query.where(PaymentToken.type == token_type)
        query = query.order_by(PaymentToken.id)
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def delete(self, token: PaymentToken) -> None:
        await self.session.delete(token)
        await self.session.flush()
        logger.info(f"Deleted {token.type} token {token.id} for user {token.user_id}")

    async def set_default(self, token: PaymentToken) -> PaymentToken:
        """Mark the token as the user's default for its gateway."""
        for other in await self.list_for_user(token.user_id, gateway_id=token.gateway_id):
            other.is_default = other.id == token.id
        await self.session.flush()
        return token


class TransientCache:
    """Key-value cache with per-entry expiry, stored in the cache_entries table.

    Readers treat missing and expired entries the same way. Writers overwrite
    unconditionally.
    """

    def __init__(self, session: AsyncSession):
        """Initialize the cache with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get(self, key: str) -> Optional[Any]:
        """Get a cached value.

        Args:
            key: Cache key.

        Returns:
            The cached value, or None on a miss or an expired entry.
        """
        entry = await self.session.get(CacheEntry, key)
        if entry is None:
            return None
        if entry.is_expired():
            await self.session.delete(entry)
            await self.session.flush()
            return None
        return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS) -> None:
        expires_at = datetime.utcnow() + timedelta(seconds=ttl_seconds)
        entry = await self.session.get(CacheEntry, key)
        if entry is None:
            entry = CacheEntry(key=key, expires_at=expires_at)
            self.session.add(entry)
        else:
            entry.created_at = datetime.utcnow()
            entry.expires_at = expires_at
        entry.value = value
        await self.session.flush()
        logger.debug(f"Cached {key} for {ttl_seconds}s")

    async def delete(self, *keys: str) -> int:
        """Delete cache entries.

        Returns:
            Number of deleted entries.
        """
        if not keys:
            return 0
        result = await self.session.execute(
            delete(CacheEntry).where(CacheEntry.key.in_(keys))
        )
        await self.session.flush()
        return result.rowcount

    async def delete_expired(self) -> int:
        """Delete expired cache entries.

        Returns:
            Number of deleted entries.
        """
        result = await self.session.execute(
            delete(CacheEntry).where(CacheEntry.expires_at < datetime.utcnow())
        )
        await self.session.flush()
        return result.rowcount


class OptionRepository:
    """Repository for boolean feature flags."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get(self, name: str, default: bool = False) -> bool:
        option = await self.session.get(Option, name)
        if option is None:
            return default
        return option.enabled

    async def set(self, name: str, enabled: bool) -> Option:
        option = await self.session.get(Option, name)
        if option is None:
            option = Option(name=name, enabled=enabled)
            self.session.add(option)
        else:
            option.enabled = enabled
        await self.session.flush()
        logger.info(f"Set option {name} to {enabled}")
        return option

    async def get_all(self) -> Dict[str, bool]:
        result = await self.session.execute(select(Option))
        return {option.name: option.enabled for option in result.scalars().all()}
