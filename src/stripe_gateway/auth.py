"""Authentication and rate limiting helpers for the API."""

import os
import secrets
import logging

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import GatewayConfig
from .dependencies import get_settings

logger = logging.getLogger(__name__)

security = HTTPBearer()

RATE_LIMIT = os.getenv("API_RATE_LIMIT", "100/minute")

limiter = Limiter(key_func=get_remote_address)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials = Security(security),
    settings: GatewayConfig = Depends(get_settings),
) -> str:
    """Verify the bearer token against the configured API key.

    Args:
        credentials: HTTP Bearer credentials from the request.
        settings: Gateway configuration holding the expected key.

    Returns:
        The verified API key.

    Raises:
        HTTPException: 500 if no API key is configured, 401 if it does not match.
    """
    expected_key = settings.api_key
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(credentials.credentials, expected_key):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials
