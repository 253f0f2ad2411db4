"""Security package for the knowledge API."""

from .auth import INTERNAL_TOKEN_HEADER, require_internal_token, token_matches
from .cors import get_allowed_origins, setup_cors

__all__ = [
    # Authentication
    "INTERNAL_TOKEN_HEADER",
    "require_internal_token",
    "token_matches",
    # CORS
    "get_allowed_origins",
    "setup_cors",
]
