"""Shared-secret authentication for internal callers."""

import hmac
import logging
from typing import Optional

from fastapi import Header

from config.settings import get_settings
from server.errors import UnauthorizedError

logger = logging.getLogger(__name__)

INTERNAL_TOKEN_HEADER = "X-Internal-Token"


def token_matches(expected: Optional[str], provided: Optional[str]) -> bool:
    """True when no token is configured or ``provided`` equals it."""
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


async def require_internal_token(x_internal_token: Optional[str] = Header(None)) -> None:
    """FastAPI dependency rejecting calls without the configured internal token."""
    if not token_matches(get_settings().server.internal_token, x_internal_token):
        logger.warning(f"Rejected request with missing or invalid {INTERNAL_TOKEN_HEADER}")
        raise UnauthorizedError("Unauthorized")
