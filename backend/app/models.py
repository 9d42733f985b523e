"""SQLAlchemy ORM models and enums.

This module defines the outbox schema for server-side conversion delivery.
Every tenant (organization) owns its CAPI configuration, its access
credential and its health counters. `ConversionEvent` rows are the outbox:
they are written by ingestion and mutated only by the outbox processor.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Column, String, DateTime, Enum, Integer, ForeignKey, JSON, Text, Boolean,
    UniqueConstraint, Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Timezone-aware UTC now, used for column defaults."""
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Enums ---------------------------------------------------------

class ConversionStatusEnum(str, enum.Enum):
    pending = "pending"
    retrying = "retrying"  # claimed by a processor pass (lease)
    sent = "sent"
    failed = "failed"


class PrivacyModeEnum(str, enum.Enum):
    """Which hashed identity fields a tenant allows in outbound payloads.

    - conservative: primary identifiers + postal/country only
    - standard: + names and full location
    - aggressive: + IP and user agent
    """
    conservative = "conservative"
    standard = "standard"
    aggressive = "aggressive"


class CredentialFormatEnum(str, enum.Enum):
    plaintext = "plaintext"  # legacy rows, token stored as JSON
    encrypted = "encrypted"


# Core models ----------------------------------------------------

class Organization(Base):
    """Organization is a tenant with its own ad account and credentials."""
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    capi_config = relationship("MetaCapiConfig", back_populates="organization", uselist=False)
    credentials = relationship("ApiCredential", back_populates="organization")
    conversion_events = relationship("ConversionEvent", back_populates="organization")

    def __str__(self):
        return self.name


class MetaCapiConfig(Base):
    """Per-tenant destination configuration.

    Read-only to the delivery pipeline; owned by tenant configuration
    management.

    `allowed_fields` overrides the privacy mode's default allow-list when set.
    `upstream_owns_conversion` marks tenants whose donation form provider
    already reports the primary conversion (enrichment-only delivery).
    """
    __tablename__ = "meta_capi_config"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, unique=True)
    pixel_id = Column(String, nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)
    privacy_mode = Column(
        Enum(PrivacyModeEnum, values_callable=lambda obj: [e.value for e in obj]),
        default=PrivacyModeEnum.conservative,
        nullable=False,
    )
    allowed_fields = Column(JSON, nullable=True)
    test_event_code = Column(String, nullable=True)
    donation_event_name = Column(String, default="Purchase", nullable=False)
    upstream_owns_conversion = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="capi_config")


class ApiCredential(Base):
    """Per-tenant access token for an external platform.

    Exactly one of `credentials` (plaintext JSON, legacy) or
    `encrypted_credentials` (Fernet ciphertext) is populated, as indicated
    by `storage_format`.
    """
    __tablename__ = "client_api_credentials"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    platform = Column(String, nullable=False, default="meta_capi")
    is_active = Column(Boolean, default=True, nullable=False)
    storage_format = Column(
        Enum(CredentialFormatEnum, values_callable=lambda obj: [e.value for e in obj]),
        default=CredentialFormatEnum.encrypted,
        nullable=False,
    )
    credentials = Column(JSON, nullable=True)
    encrypted_credentials = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    rotated_at = Column(DateTime(timezone=True), nullable=True)

    organization = relationship("Organization", back_populates="credentials")


class ConversionEvent(Base):
    """A conversion waiting for (or done with) delivery to Meta CAPI.

    `event_id` is the idempotency token presented to Meta and never changes
    across retries. `user_data_hashed` holds SHA-256 digests computed at
    ingestion; the delivery path only filters it.

    Eligible for a pass when status is not `sent`, `retry_count` is below
    the max attempts and `next_retry_at` is null or in the past.
    """
    __tablename__ = "meta_conversion_events"
    __table_args__ = (
        UniqueConstraint("organization_id", "event_id", name="uq_conversion_event_org_event_id"),
        UniqueConstraint("organization_id", "dedupe_key", name="uq_conversion_event_org_dedupe_key"),
        Index("ix_conversion_events_status_next_retry", "status", "next_retry_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    event_id = Column(String, nullable=False)
    dedupe_key = Column(String, nullable=False)

    # Source linkage (upstream transaction)
    source_type = Column(String, nullable=True)  # webhook, backfill, ...
    source_id = Column(String, nullable=True)

    # Payload
    event_name = Column(String, nullable=False, default="Purchase")
    event_time = Column(DateTime(timezone=True), nullable=True)  # transaction time, not send time
    event_source_url = Column(String, nullable=True)
    user_data_hashed = Column(JSON, nullable=False, default=dict)
    custom_data = Column(JSON, nullable=False, default=dict)
    fbp = Column(String, nullable=True)
    fbc = Column(String, nullable=True)
    external_id = Column(String, nullable=True)
    pixel_id = Column(String, nullable=True)  # destination override
    is_enrichment_only = Column(Boolean, default=False, nullable=False)
    match_score = Column(Integer, nullable=True)
    match_quality = Column(String, nullable=True)

    # Delivery state
    status = Column(
        Enum(ConversionStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        default=ConversionStatusEnum.pending,
        nullable=False,
    )
    retry_count = Column(Integer, default=0, nullable=False)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    lease_token = Column(String, nullable=True)  # set by the pass holding the claim
    last_error = Column(Text, nullable=True)
    last_status_code = Column(Integer, nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    meta_response = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="conversion_events")

    def __str__(self):
        return f"{self.event_name}:{self.event_id} ({self.status.value if self.status else 'new'})"


class CapiHealthStats(Base):
    """Delivery health per tenant.

    Lifetime counters plus a rolling 24h window that the health tracker
    resets lazily when it has expired.
    """
    __tablename__ = "capi_health_stats"

    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), primary_key=True)
    total_sent = Column(Integer, default=0, nullable=False)
    total_failed = Column(Integer, default=0, nullable=False)
    consecutive_failures = Column(Integer, default=0, nullable=False)
    window_started_at = Column(DateTime(timezone=True), nullable=True)
    window_sent = Column(Integer, default=0, nullable=False)
    window_failed = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    last_error_kind = Column(String, nullable=True)
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    last_failure_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
