# chat_relay/core/security.py
import os
import secrets
import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from .config import RelayConfig
from .exceptions import Unauthorized

logger = logging.getLogger(' ' * 5 + os.path.basename(__file__))

API_KEY_HEADER = APIKeyHeader(name="Authorization", auto_error=False) # Set auto_error=False for custom handling
RELAY_KEY_PREFIX = "rly_" # Recommended prefix for clarity


def generate_api_key(length: int = 32) -> str:
    """Generates a secure, random API key."""
    return RELAY_KEY_PREFIX + secrets.token_urlsafe(length)


def check_relay_key(authorization: Optional[str], config: RelayConfig) -> str:
    """Validates an `Authorization: Bearer <key>` value against the configured relay keys."""
    if not authorization:
        raise Unauthorized("Authorization header is missing")

    if not authorization.startswith("Bearer "):
        raise Unauthorized("Invalid Authorization header format. Expected 'Bearer <key>'")

    key = authorization.split(" ", 1)[1].strip() # Split only once

    # Constant-time comparison against every configured key
    if not any(secrets.compare_digest(key.encode(), allowed.encode()) for allowed in config.allowed_relay_keys):
        logger.warning("Rejected request with an unknown relay API key")
        raise Unauthorized("Invalid API key")
    return key


async def validate_relay_key(request: Request, api_key: Optional[str] = Depends(API_KEY_HEADER)) -> str:
    """Dependency to validate the incoming relay API key."""
    return check_relay_key(api_key, request.app.state.relay_config)
