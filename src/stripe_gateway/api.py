"""REST API for the Stripe gateway: order customers, terminal captures and saved tokens."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import verify_api_key, limiter, RATE_LIMIT
from .connectors.base import StripeClientBase
from .database import init_db, close_db, get_db
from .database.models import PaymentToken
from .database.repository import PaymentTokenRepository
from .dependencies import get_stripe_client, get_token_synchronizer, get_order_service
from .errors import StripeGatewayError
from .orders import OrderService
from .tokens import TokenSynchronizer, saved_method_label

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await close_db()


app = FastAPI(title="WooCommerce Stripe Gateway API", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(StripeGatewayError)
async def gateway_error_handler(request: Request, exc: StripeGatewayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


router = APIRouter(prefix="/wc/v3/wc_stripe", tags=["wc_stripe"])


class CaptureTerminalPaymentBody(BaseModel):
    """Request body for capturing an in-person payment."""
    payment_intent_id: str = Field(..., min_length=1, description="Stripe PaymentIntent id")


def _token_response(token: PaymentToken) -> dict:
    data = token.to_dict()
    data["method"] = saved_method_label(token)["method"]
    return data


async def _get_user_token(db: AsyncSession, user_id: int, token_id: int) -> PaymentToken:
    token = await PaymentTokenRepository(db).get_by_id(token_id)
    if token is None or token.user_id != user_id:
        raise HTTPException(status_code=404, detail=f"Token {token_id} not found")
    return token


@router.post("/orders/{order_id}/create_customer")
@limiter.limit(RATE_LIMIT)
async def create_order_customer(
    request: Request,
    order_id: int,
    orders: OrderService = Depends(get_order_service),
    api_key: str = Depends(verify_api_key),
):
    """Create or update the Stripe customer of an order and return its id."""
    return await orders.create_customer(order_id)


@router.post("/orders/{order_id}/capture_terminal_payment")
@limiter.limit(RATE_LIMIT)
async def capture_terminal_payment(
    request: Request,
    order_id: int,
    body: CaptureTerminalPaymentBody,
    orders: OrderService = Depends(get_order_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Capture an authorized in-person payment for an order.

    The order must have no refunds and the intent must be awaiting capture.
    On success the order is completed.
    """
    logger.info(f"Capturing {body.payment_intent_id} for order {order_id}")
    return await orders.capture(order_id, body.payment_intent_id)


@router.get("/customers/{user_id}/payment_tokens")
@limiter.limit(RATE_LIMIT)
async def list_payment_tokens(
    request: Request,
    user_id: int,
    gateway_id: Optional[str] = Query(default=None),
    synchronizer: TokenSynchronizer = Depends(get_token_synchronizer),
    api_key: str = Depends(verify_api_key),
):
    """List a customer's saved tokens after synchronizing them with Stripe."""
    tokens = await synchronizer.get_customer_tokens(user_id, gateway_id or "")
    return {
        "user_id": user_id,
        "tokens": [_token_response(token) for token in sorted(tokens.values(), key=lambda t: t.id)],
    }


@router.delete("/customers/{user_id}/payment_tokens/{token_id}")
@limiter.limit(RATE_LIMIT)
async def delete_payment_token(
    request: Request,
    user_id: int,
    token_id: int,
    db: AsyncSession = Depends(get_db),
    synchronizer: TokenSynchronizer = Depends(get_token_synchronizer),
    api_key: str = Depends(verify_api_key),
):
    """Delete a saved token, detaching its payment method from the customer."""
    token = await _get_user_token(db, user_id, token_id)
    await synchronizer.delete_token(token)
    return {"id": token_id, "deleted": True}


@router.post("/customers/{user_id}/payment_tokens/{token_id}/default")
@limiter.limit(RATE_LIMIT)
async def set_default_payment_token(
    request: Request,
    user_id: int,
    token_id: int,
    db: AsyncSession = Depends(get_db),
    synchronizer: TokenSynchronizer = Depends(get_token_synchronizer),
    api_key: str = Depends(verify_api_key),
):
    """Make a token the customer's default, locally and on Stripe."""
    token = await _get_user_token(db, user_id, token_id)
    token = await synchronizer.set_default_token(token)
    return _token_response(token)


app.include_router(router)


@app.get("/health")
async def health(client: StripeClientBase = Depends(get_stripe_client)):
    return {"status": "ok", "stripe": client.health_check()}
