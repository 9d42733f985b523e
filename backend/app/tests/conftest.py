"""Pytest configuration for CAPI outbox tests

WHAT: Provides shared fixtures for database isolation, tenant seeding and
      fake Meta responses
WHY: Every test gets its own file-backed SQLite database so several sessions
     (concurrent passes, tenants) can see each other's commits
REFERENCES:
    - app/database.py: Database configuration
    - app/services/capi_outbox_processor.py: Processor under test
"""

import functools
import json
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment before any app import
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
# Must be URL-safe base64-encoded 32-byte string (app.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

from app.deps import Settings  # noqa: E402
from app.models import (  # noqa: E402
    Base,
    ApiCredential,
    ConversionEvent,
    ConversionStatusEnum,
    CredentialFormatEnum,
    MetaCapiConfig,
    Organization,
    PrivacyModeEnum,
)
from app.security import encrypt_credentials  # noqa: E402
from app.services.capi_privacy import hash_user_data_for_storage  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def session_factory(tmp_path):
    """Session factory bound to a fresh file-backed SQLite database."""
    db_file = tmp_path / "capi_outbox.db"
    engine = create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def settings():
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        META_CONVERSIONS_API_TOKEN=None,
        CRON_SECRET="test-cron-secret",
    )


# ============================================================================
# Seed helpers
# ============================================================================

FULL_IDENTITY = {
    "email": "  Donor@Example.com ",
    "phone": "(555) 123-4567",
    "first_name": "Ada",
    "last_name": "Lovelace",
    "city": "New York",
    "state": "NY",
    "zip": "10001-1234",
    "country": "US",
}


def seed_tenant(
    db,
    *,
    name: str = "Tenant",
    pixel_id: str = "pixel-1",
    enabled: bool = True,
    privacy_mode: PrivacyModeEnum = PrivacyModeEnum.standard,
    token: Optional[str] = "tenant-token",
    storage: CredentialFormatEnum = CredentialFormatEnum.plaintext,
    with_config: bool = True,
    allowed_fields=None,
    test_event_code: Optional[str] = None,
) -> uuid.UUID:
    """Create an organization with optional config and credential rows."""
    org = Organization(id=uuid.uuid4(), name=name)
    db.add(org)
    db.flush()

    if with_config:
        db.add(MetaCapiConfig(
            organization_id=org.id,
            pixel_id=pixel_id,
            is_enabled=enabled,
            privacy_mode=privacy_mode,
            allowed_fields=allowed_fields,
            test_event_code=test_event_code,
        ))

    if token is not None:
        if storage == CredentialFormatEnum.plaintext:
            credential = ApiCredential(
                organization_id=org.id,
                storage_format=CredentialFormatEnum.plaintext,
                credentials={"access_token": token},
            )
        else:
            credential = ApiCredential(
                organization_id=org.id,
                storage_format=CredentialFormatEnum.encrypted,
                encrypted_credentials=encrypt_credentials({"access_token": token}, context=str(org.id)),
            )
        db.add(credential)

    db.commit()
    return org.id


def seed_event(
    db,
    organization_id: uuid.UUID,
    *,
    event_id: Optional[str] = None,
    status: ConversionStatusEnum = ConversionStatusEnum.pending,
    retry_count: int = 0,
    next_retry_at: Optional[datetime] = None,
    event_time: Optional[datetime] = None,
    custom_data: Optional[Dict[str, Any]] = None,
    identity: Optional[Dict[str, Any]] = None,
    fbp: Optional[str] = None,
    fbc: Optional[str] = None,
    is_enrichment_only: bool = False,
    event_name: str = "Purchase",
) -> uuid.UUID:
    """Insert an outbox row the way ingestion would have stored it."""
    now = datetime.now(timezone.utc)
    source_id = f"tx-{uuid.uuid4().hex[:8]}"
    event = ConversionEvent(
        id=uuid.uuid4(),
        organization_id=organization_id,
        event_id=event_id or str(uuid.uuid4()),
        dedupe_key=f"{event_name}:{organization_id}:{source_id}",
        source_type="webhook",
        source_id=source_id,
        event_name=event_name,
        event_time=event_time or now - timedelta(hours=1),
        user_data_hashed=hash_user_data_for_storage(identity or FULL_IDENTITY),
        custom_data=custom_data if custom_data is not None else {"value": 25.0, "currency": "USD"},
        fbp=fbp,
        fbc=fbc,
        is_enrichment_only=is_enrichment_only,
        status=status,
        retry_count=retry_count,
        next_retry_at=next_retry_at,
        created_at=now,
        updated_at=now,
    )
    db.add(event)
    db.commit()
    return event.id


# ============================================================================
# Fake Meta
# ============================================================================

class FakeMeta:
    """httpx.MockTransport handler recording requests per pixel.

    `responses` maps pixel id to a callable(request) -> httpx.Response;
    unmapped pixels accept the event.
    """

    def __init__(self):
        self.requests = []
        self.responses = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        pixel_id = request.url.path.rstrip("/").split("/")[-2]
        responder = self.responses.get(pixel_id)
        if responder is not None:
            return responder(request)
        return httpx.Response(200, json={"events_received": 1, "fbtrace_id": "trace-ok"})

    def bodies(self):
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture
def fake_meta():
    return FakeMeta()


@pytest_asyncio.fixture
async def http_client(fake_meta):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_meta)) as client:
        yield client


@pytest.fixture
def make_tenant(db):
    return functools.partial(seed_tenant, db)


@pytest.fixture
def make_event(db):
    return functools.partial(seed_event, db)
