"""Keeps a user's saved payment tokens in step with their Stripe payment methods."""

import logging
from typing import Optional, Dict, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import GatewayConfig
from ..connectors.base import (
    StripeClientBase,
    PaymentMethod,
    PaymentMethods,
    UPE_GATEWAY_ID,
    REUSABLE_GATEWAYS_BY_PAYMENT_METHOD,
    QUERYABLE_PAYMENT_METHOD_TYPES,
    is_valid_payment_method_id,
)
from ..customers import CustomerReconciler, LocalIdentity
from ..database.models import PaymentToken, token_class_for
from ..database.repository import PaymentTokenRepository
from ..errors import StripeGatewayError
from .labels import LABEL_OVERRIDE_PAYMENT_METHOD_TYPES

logger = logging.getLogger(__name__)

# Payment method types whose token details are refreshed from later payments.
UPDATABLE_FROM_DETAILS_TYPES = [PaymentMethods.CASHAPP_PAY]

# Upper bound when looking up duplicate tokens.
DUPLICATE_LOOKUP_LIMIT = 100


class TokenSynchronizer:
    """
    Reconciles the local token set of a user against the live payment methods
    of their Stripe customer.

    Remote lists are fetched before anything local changes, so a failed fetch
    leaves the tokens exactly as they were.
    """

    def __init__(
        self,
        session: AsyncSession,
        client: StripeClientBase,
        config: Optional[GatewayConfig] = None,
        customers: Optional[CustomerReconciler] = None,
    ):
        self.session = session
        self.client = client
        self.config = config or GatewayConfig()
        self.customers = customers or CustomerReconciler(session, client, self.config)
        self.tokens = PaymentTokenRepository(session)

    async def get_customer_tokens(self, user_id: int, gateway_id: str = "") -> Dict[int, PaymentToken]:
        """Load a user's stored tokens (one page) and synchronize them."""
        stored = await self.tokens.list_for_user(
            user_id,
            gateway_id=gateway_id or None,
            limit=self.config.tokens_page_size,
        )
        return await self.sync(user_id, {token.id: token for token in stored}, gateway_id)

    async def sync(
        self,
        user_id: int,
        tokens: Dict[int, PaymentToken],
        gateway_id: str = "",
    ) -> Dict[int, PaymentToken]:
        """
        Synchronize ``tokens`` with the user's Stripe payment methods.

        Args:
            user_id: Owner of the tokens. Guests (0) are never synchronized.
            tokens: The user's known tokens keyed by local token id.
            gateway_id: Only create tokens for this gateway. Empty means all.

        Returns:
            The updated token collection. On any gateway error the input is
            returned unchanged.
        """
        if not user_id or (gateway_id and gateway_id not in REUSABLE_GATEWAYS_BY_PAYMENT_METHOD.values()):
            return tokens

        # Only one page of tokens is ever loaded. Users at the limit are left alone.
        if len(tokens) >= self.config.tokens_page_size:
            logger.warning(
                f"User {user_id} has {len(tokens)} saved tokens, "
                f"skipping synchronization (page size {self.config.tokens_page_size})"
            )
            return tokens

        identity = await self.customers.identity_for_user(user_id)
        if identity.is_guest:
            return tokens

        try:
            return await self._sync(identity, dict(tokens), gateway_id)
        except StripeGatewayError as e:
            logger.error(f"Token synchronization for user {user_id} aborted: {e.message}")
            return tokens

    def _partition(
        self,
        tokens: Dict[int, PaymentToken],
    ) -> Tuple[Dict[str, PaymentToken], Dict[str, PaymentToken]]:
        """Split tokens of reusable gateways into current ones and deprecated ones, keyed by remote id."""
        reusable_gateways = set(REUSABLE_GATEWAYS_BY_PAYMENT_METHOD.values())
        stored: Dict[str, PaymentToken] = {}
        deprecated: Dict[str, PaymentToken] = {}

        for token in tokens.values():
            if token.gateway_id not in reusable_gateways:
                continue
            # SEPA tokens on the main gateway predate per-method gateways, and
            # source ids only work for cards.
            if (
                (token.gateway_id == UPE_GATEWAY_ID and token.type == PaymentMethods.SEPA)
                or not is_valid_payment_method_id(token.token, token.stripe_payment_method_type())
            ):
                deprecated[token.token] = token
                continue
            stored[token.token] = token

        return stored, deprecated

    def _payment_method_types_to_fetch(self) -> List[str]:
        config = self.config
        if config.optimized_checkout:
            types = list(QUERYABLE_PAYMENT_METHOD_TYPES)
        else:
            types = [t for t in QUERYABLE_PAYMENT_METHOD_TYPES if config.is_enabled(t)]

        # iDEAL and Bancontact are saved as SEPA debits.
        if config.sepa_tokens_for_other_methods and not config.optimized_checkout:
            if not config.is_enabled(PaymentMethods.SEPA_DEBIT) and (
                config.is_enabled(PaymentMethods.IDEAL) or config.is_enabled(PaymentMethods.BANCONTACT)
            ):
                types.append(PaymentMethods.SEPA_DEBIT)

        return list(dict.fromkeys(types))

    async def _fetch_payment_methods(self, identity: LocalIdentity) -> List[PaymentMethod]:
        payment_methods: List[PaymentMethod] = []
        for payment_method_type in self._payment_method_types_to_fetch():
            payment_methods.extend(await self.customers.get_payment_methods(identity, payment_method_type))
        return payment_methods

    async def _sync(
        self,
        identity: LocalIdentity,
        tokens: Dict[int, PaymentToken],
        gateway_id: str,
    ) -> Dict[int, PaymentToken]:
        stored, deprecated = self._partition(tokens)
        payment_methods = await self._fetch_payment_methods(identity)
        positions = {payment_method.id: index for index, payment_method in enumerate(payment_methods)}

        for payment_method in payment_methods:
            payment_method_type = payment_method.original_type()
            token_gateway = REUSABLE_GATEWAYS_BY_PAYMENT_METHOD.get(payment_method_type)
            if token_gateway is None:
                continue

            if not self.config.optimized_checkout and not self.config.is_enabled(payment_method_type):
                continue

            if (
                payment_method.id not in stored
                and is_valid_payment_method_id(payment_method.id, payment_method_type)
                and (not gateway_id or token_gateway == gateway_id)
            ):
                token = await self._add_token_to_user(identity, payment_method, positions, deprecated)
                tokens[token.id] = token
                # The returned token now refers to a listed payment method.
                stored = {remote_id: t for remote_id, t in stored.items() if t.id != token.id}
            else:
                stored.pop(payment_method.id, None)

        for token in list(stored.values()) + list(deprecated.values()):
            tokens.pop(token.id, None)
            await self.tokens.delete(token)

        return tokens

    async def get_duplicate_token(
        self,
        payment_method: PaymentMethod,
        user_id: int,
        gateway_id: str,
        exclude: Optional[Dict[str, PaymentToken]] = None,
    ) -> Optional[PaymentToken]:
        """Find a token of the user on ``gateway_id`` for the same instrument."""
        excluded_ids = {token.id for token in (exclude or {}).values()}
        candidates = await self.tokens.list_for_user(user_id, gateway_id=gateway_id, limit=DUPLICATE_LOOKUP_LIMIT)
        for token in candidates:
            if token.id not in excluded_ids and token.is_equal_payment_method(payment_method):
                return token
        return None

    async def _add_token_to_user(
        self,
        identity: LocalIdentity,
        payment_method: PaymentMethod,
        positions: Dict[str, int],
        deprecated: Dict[str, PaymentToken],
    ) -> PaymentToken:
        payment_method_type = payment_method.original_type()
        gateway_id = REUSABLE_GATEWAYS_BY_PAYMENT_METHOD[payment_method_type]
        await self.customers.clear_cache(identity)

        found = await self.get_duplicate_token(payment_method, identity.user_id, gateway_id, exclude=deprecated)
        if found is not None:
            # The most recently listed payment method wins, which keeps
            # repeated runs stable.
            current = positions.get(found.token)
            if current is None or current < positions[payment_method.id]:
                logger.info(f"Token {found.id} moved from {found.token} to {payment_method.id}")
                found.token = payment_method.id
                await self.tokens.save(found)
            return found

        token_class = token_class_for(payment_method_type)
        token = token_class(
            gateway_id=gateway_id,
            token=payment_method.id,
            user_id=identity.user_id,
        )
        token.populate_from_payment_method(payment_method)
        return await self.tokens.add(token)

    async def delete_token(self, token: PaymentToken) -> None:
        """
        Delete a token and detach its payment method from the Stripe customer.

        Live payment methods are kept attached when the deletion comes from an
        admin screen of a non-production copy of the store.
        """
        if token.gateway_id in REUSABLE_GATEWAYS_BY_PAYMENT_METHOD.values() and self.config.should_detach_on_delete():
            identity = await self.customers.identity_for_user(token.user_id)
            await self.customers.detach_payment_method(identity, token.token)
        await self.tokens.delete(token)

    async def set_default_token(self, token: PaymentToken) -> PaymentToken:
        await self.tokens.set_default(token)
        if token.token.startswith("pm_"):
            identity = await self.customers.identity_for_user(token.user_id)
            await self.customers.set_default_payment_method(identity, token.token)
        return token

    async def update_token_from_method_details(
        self,
        user_id: int,
        payment_method_id: str,
        details: PaymentMethod,
    ) -> None:
        """Refresh stored details (the Cash App cashtag) from a payment's method details."""
        if details.type not in UPDATABLE_FROM_DETAILS_TYPES:
            return

        tokens = await self.tokens.list_for_user(
            user_id,
            gateway_id=REUSABLE_GATEWAYS_BY_PAYMENT_METHOD[details.type],
            token_type=details.type,
        )
        for token in tokens:
            if token.token != payment_method_id:
                continue
            if details.type == PaymentMethods.CASHAPP_PAY and details.cashapp.cashtag:
                token.cashtag = details.cashapp.cashtag
                await self.tokens.save(token)
                logger.info(f"Updated cashtag of token {token.id}")

    async def label_overrides(self, user_id: int) -> Dict[int, str]:
        """Checkout labels for tokens whose gateway id makes a poor label."""
        overrides: Dict[int, str] = {}
        for payment_method_type in LABEL_OVERRIDE_PAYMENT_METHOD_TYPES:
            gateway_id = REUSABLE_GATEWAYS_BY_PAYMENT_METHOD[payment_method_type]
            for token in await self.tokens.list_for_user(
                user_id, gateway_id=gateway_id, token_type=payment_method_type
            ):
                overrides[token.id] = token.display_name()
        return overrides
