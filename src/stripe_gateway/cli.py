#!/usr/bin/env python3
"""Command-line interface for gateway maintenance tasks.

Usage:
    python -m stripe_gateway.cli sync-tokens --user-id 42
    python -m stripe_gateway.cli sync-tokens --user-id 42 --gateway-id stripe_sepa_debit
    python -m stripe_gateway.cli capture --order-id 501 --intent-id pi_123
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from .config import GatewayConfig, load_gateway_config
from .connectors.base import StripeClientBase
from .connectors.stripe_connector import StripeClient
from .database import init_db, close_db, get_db_context
from .errors import StripeGatewayError
from .orders import OrderService
from .tokens import TokenSynchronizer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def sync_tokens_async(
    user_id: int,
    gateway_id: str = "",
    client: Optional[StripeClientBase] = None,
    database_url: Optional[str] = None,
) -> int:
    """Synchronize one user's saved tokens and print them as JSON.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    settings = GatewayConfig.from_env()
    await init_db(database_url)
    try:
        client = client or StripeClient(api_key=settings.stripe_api_key)
        async with get_db_context() as session:
            config = await load_gateway_config(session, settings)
            synchronizer = TokenSynchronizer(session, client, config)
            tokens = await synchronizer.get_customer_tokens(user_id, gateway_id)
            print(json.dumps([tokens[token_id].to_dict() for token_id in sorted(tokens)], indent=2))
        return 0
    except (StripeGatewayError, ValueError) as e:
        logger.error(f"Token synchronization failed: {e}")
        return 1
    finally:
        await close_db()


async def capture_async(
    order_id: int,
    intent_id: str,
    client: Optional[StripeClientBase] = None,
    database_url: Optional[str] = None,
) -> int:
    """Capture a terminal payment for an order and print the result.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    settings = GatewayConfig.from_env()
    await init_db(database_url)
    try:
        client = client or StripeClient(api_key=settings.stripe_api_key)
        async with get_db_context() as session:
            config = await load_gateway_config(session, settings)
            result = await OrderService(session, client, config).capture(order_id, intent_id)
        print(json.dumps(result))
        return 0
    except StripeGatewayError as e:
        logger.error(f"Capture failed ({e.code}): {e.message}")
        return 1
    except ValueError as e:
        logger.error(str(e))
        return 1
    finally:
        await close_db()


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stripe_gateway",
        description="Stripe gateway maintenance tools.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sync_parser = subparsers.add_parser(
        "sync-tokens",
        help="Synchronize a user's saved tokens with Stripe",
    )
    sync_parser.add_argument("--user-id", "-u", type=int, required=True, help="Local user id")
    sync_parser.add_argument(
        "--gateway-id", "-g",
        default="",
        help="Only create tokens for this gateway (default: all)",
    )

    capture_parser = subparsers.add_parser(
        "capture",
        help="Capture an authorized in-person payment for an order",
    )
    capture_parser.add_argument("--order-id", "-o", type=int, required=True, help="Local order id")
    capture_parser.add_argument("--intent-id", "-i", required=True, help="Stripe PaymentIntent id")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "sync-tokens":
        return asyncio.run(sync_tokens_async(parsed_args.user_id, parsed_args.gateway_id))

    if parsed_args.command == "capture":
        return asyncio.run(capture_async(parsed_args.order_id, parsed_args.intent_id))

    return 0


if __name__ == "__main__":
    sys.exit(main())
