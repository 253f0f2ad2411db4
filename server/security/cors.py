"""CORS configuration for the knowledge API."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import os
from typing import List, Optional
import logging

from server.security.auth import INTERNAL_TOKEN_HEADER

logger = logging.getLogger(__name__)


def get_allowed_origins() -> List[str]:
    """Origins from ``ALLOWED_ORIGINS`` (comma separated); empty disables CORS."""
    env_origins = os.getenv("ALLOWED_ORIGINS", "")
    return [origin.strip() for origin in env_origins.split(",") if origin.strip()]


def get_cors_config(origins: List[str]) -> dict:
    return {
        "allow_origins": origins,
        "allow_credentials": "*" not in origins,
        "allow_methods": ["GET", "POST", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Accept",
            "Content-Type",
            INTERNAL_TOKEN_HEADER,
        ],
        "max_age": 600,
    }


def setup_cors(app: FastAPI, custom_origins: Optional[List[str]] = None) -> bool:
    """Install CORS middleware when any origin is allowed."""
    origins = custom_origins if custom_origins is not None else get_allowed_origins()
    if not origins:
        logger.debug("No CORS origins configured")
        return False

    app.add_middleware(CORSMiddleware, **get_cors_config(origins))
    logger.info(f"CORS configured with origins: {origins}")
    return True
