"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }


class TenantRunSummaryResponse(BaseModel):
    processed: int
    sent: int
    failed: int
    skipped: int
    error: Optional[str] = None


class OutboxRunSummaryResponse(BaseModel):
    """Summary of one outbox delivery pass."""

    processed: int = Field(description="Events claimed by this pass")
    sent: int = Field(description="Events accepted by Meta")
    failed: int = Field(description="Events that failed an attempt (retrying or terminal)")
    skipped: int = Field(description="Events deferred for tenant-level reasons (no credentials, CAPI disabled)")
    duration_ms: int = Field(description="Wall-clock duration of the pass")
    tenants: Dict[str, TenantRunSummaryResponse] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "example": {
                "processed": 12,
                "sent": 10,
                "failed": 1,
                "skipped": 1,
                "duration_ms": 842,
                "tenants": {},
            }
        }
    }


class CapiHealthStatsResponse(BaseModel):
    """Delivery health for one tenant."""

    organization_id: UUID
    status: str = Field(description="healthy, degraded or failing")
    total_sent: int
    total_failed: int
    consecutive_failures: int
    window_sent: int = Field(description="Successes in the rolling 24h window")
    window_failed: int = Field(description="Failures in the rolling 24h window")
    failure_rate: float
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CapiHealthListResponse(BaseModel):
    tenants: List[CapiHealthStatsResponse]


class DryRunResponse(BaseModel):
    """Request that would be sent for one event; the token is redacted."""

    id: UUID
    organization_id: UUID
    event_id: str
    status: Optional[str] = None
    retry_count: int
    would_send: bool = Field(description="False when credentials or validation would block delivery")
    credential_source: Optional[str] = Field(default=None, description="plaintext, decrypted or global_fallback")
    url: Optional[str] = None
    request_body: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class RequeueResponse(BaseModel):
    id: UUID
    event_id: str
    status: str
    retry_count: int
    next_retry_at: Optional[datetime] = None


class ResendRequest(BaseModel):
    """Corrected identity fields for a resend. At least one is required."""

    fbc: Optional[str] = Field(default=None, description="Full click id, e.g. fb.1.<ts>.<fbclid>")
    fbp: Optional[str] = None
    external_id: Optional[str] = None
    user_data: Optional[Dict[str, str]] = Field(
        default=None,
        description="Plaintext identity fields (email, phone, ...); hashed before storage",
    )
    client_ip_address: Optional[str] = None
    client_user_agent: Optional[str] = None
