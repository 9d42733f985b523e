"""Dependency providers and settings management."""

import hmac
import json
import logging
from functools import lru_cache
from typing import Dict, List, Optional

from fastapi import Header, HTTPException, status
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .security import decode_token

logger = logging.getLogger(__name__)


# Default allow-lists per privacy mode. Deployments override them with the
# CAPI_PRIVACY_MODE_FIELDS JSON setting; tenants override them per config row.
DEFAULT_PRIVACY_MODE_FIELDS: Dict[str, List[str]] = {
    "conservative": ["em", "ph", "zp", "country", "external_id", "fbp", "fbc"],
    "standard": ["em", "ph", "fn", "ln", "ct", "st", "zp", "country", "external_id", "fbp", "fbc"],
    "aggressive": [
        "em", "ph", "fn", "ln", "ct", "st", "zp", "country", "external_id", "fbp", "fbc",
        "client_ip_address", "client_user_agent",
    ],
}


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"

    # Meta Graph API
    META_GRAPH_API_VERSION: str = "v22.0"
    META_GRAPH_BASE_URL: str = "https://graph.facebook.com"
    # Legacy process-wide token for tenants not yet migrated to their own token
    META_CONVERSIONS_API_TOKEN: Optional[str] = None

    # Outbox processing
    CAPI_BATCH_SIZE: int = 50
    CAPI_MAX_ATTEMPTS: int = 5
    CAPI_RETRY_BASE_MINUTES: int = 5
    CAPI_RETRY_CEILING_MINUTES: int = 60
    CAPI_LEASE_MINUTES: int = 10
    CAPI_REQUEST_TIMEOUT_SECONDS: float = 30.0
    CAPI_TENANT_CONCURRENCY: int = 3
    CAPI_MAX_CONCURRENT_TENANTS: int = 5
    CAPI_MAX_EVENT_AGE_DAYS: int = 7
    CAPI_MAX_FUTURE_SKEW_MINUTES: int = 10
    CAPI_PRIVACY_MODE_FIELDS: Dict[str, List[str]] = DEFAULT_PRIVACY_MODE_FIELDS

    # Trigger authentication
    CRON_SECRET: Optional[str] = None

    # Redis (arq scheduler)
    REDIS_URL: str = "redis://localhost:6379/0"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("CAPI_PRIVACY_MODE_FIELDS", mode="before")
    @classmethod
    def _parse_privacy_fields(cls, value):
        # pydantic-settings decodes JSON for complex types already; this also
        # accepts a raw string when the value is passed programmatically.
        if isinstance(value, str):
            value = json.loads(value)
        return value


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def require_scheduler_or_admin(
    x_cron_secret: Optional[str] = Header(default=None, alias="X-Cron-Secret"),
    authorization: Optional[str] = Header(default=None),
) -> str:
    """Authenticate the outbox trigger and operator endpoints.

    Accepts either the scheduler's shared secret (`X-Cron-Secret`) or a
    bearer JWT whose `role` claim is `admin`. Returns the principal kind
    ("scheduler" or "admin").
    """
    settings = get_settings()

    if x_cron_secret and settings.CRON_SECRET:
        if hmac.compare_digest(x_cron_secret, settings.CRON_SECRET):
            return "scheduler"
        logger.warning("[AUTH] Invalid cron secret presented")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    # Remove optional "Bearer " prefix
    if authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]
    else:
        token = authorization

    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    if payload.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")

    return "admin"
