#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Runtime configuration for the Industrial Marketplace backend

Every setting comes from the environment (optionally a .env file) and is read
once at import time.

Usage:
    from config import APP_ENV, IS_PRODUCTION, get_env_int
"""

import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

_TRUE_VALUES = ("1", "true", "yes", "y", "on")


def get_env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip()


def get_env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUE_VALUES


def get_env_int(name: str, default: int, min_value: Optional[int] = None) -> int:
    raw = os.getenv(name)
    try:
        value = int(raw) if raw is not None and raw.strip() else default
    except ValueError:
        value = default
    if min_value is not None and value < min_value:
        value = min_value
    return value


def get_env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# Environment
APP_ENV = get_env("APP_ENV", "development").lower()
IS_PRODUCTION = APP_ENV == "production"
LOG_LEVEL = get_env("LOG_LEVEL", "INFO").upper()
PORT = get_env_int("PORT", 3000, min_value=1)

# Database
DATABASE_URL = get_env("DATABASE_URL", "sqlite:///./marketplace.db")

# Bearer tokens
DEFAULT_JWT_SECRET_KEY = "industrial-marketplace-jwt-secret-change-in-production"
JWT_SECRET_KEY = get_env("JWT_SECRET_KEY", DEFAULT_JWT_SECRET_KEY)
ACCESS_TOKEN_EXPIRE_MINUTES = get_env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 24 * 60, min_value=1)
REFRESH_TOKEN_EXPIRE_DAYS = get_env_int("REFRESH_TOKEN_EXPIRE_DAYS", 7, min_value=1)

# Sessions
DEFAULT_SESSION_SECRET = "industrial-marketplace-session-secret-change-in-production"
SESSION_SECRET = get_env("SESSION_SECRET", DEFAULT_SESSION_SECRET)
SESSION_COOKIE = get_env("SESSION_COOKIE", "marketplace_session")
SESSION_MAX_AGE_SECONDS = get_env_int("SESSION_MAX_AGE_SECONDS", 24 * 60 * 60, min_value=60)

# Anti-forgery
CSRF_ENABLED = get_env_bool("CSRF_ENABLED", default=True)

# Rate limiting
RATE_LIMIT_ENABLED = get_env_bool("RATE_LIMIT_ENABLED", default=True)
AUTH_RATE_LIMIT_MAX = get_env_int("AUTH_RATE_LIMIT_MAX", 10, min_value=1)
AUTH_RATE_LIMIT_WINDOW_SEC = get_env_int("AUTH_RATE_LIMIT_WINDOW_SEC", 15 * 60, min_value=1)
API_RATE_LIMIT_MAX = get_env_int("API_RATE_LIMIT_MAX", 100, min_value=1)
API_RATE_LIMIT_WINDOW_SEC = get_env_int("API_RATE_LIMIT_WINDOW_SEC", 15 * 60, min_value=1)

# HTTP surface
CORS_ORIGINS = get_env_list(
    "CORS_ORIGINS",
    ["http://localhost:3000", "http://localhost:3001", "http://localhost:3080"],
)
DEBUG_ROUTES = get_env_bool("DEBUG_ROUTES", default=False)


def assert_production_ready() -> None:
    """Refuse to boot a production instance with a development signing key."""
    if not IS_PRODUCTION:
        return
    for name, value, default in (
        ("SESSION_SECRET", SESSION_SECRET, DEFAULT_SESSION_SECRET),
        ("JWT_SECRET_KEY", JWT_SECRET_KEY, DEFAULT_JWT_SECRET_KEY),
    ):
        if not value or value == default:
            raise RuntimeError(f"{name} must be set to a strong, non-default value in production.")
