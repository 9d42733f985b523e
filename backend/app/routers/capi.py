"""Meta CAPI outbox endpoints.

WHAT:
    - Trigger one outbox delivery pass (scheduler or admin)
    - Read per-tenant delivery health
    - Dry-run and re-queue single events (support tooling)

SECURITY:
    Every route requires the scheduler's `X-Cron-Secret` or an admin JWT
    (see app.deps.require_scheduler_or_admin).

REFERENCES:
    - app/services/capi_outbox_processor.py
    - app/services/capi_health.py
"""

import logging
from typing import Callable
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import schemas
from ..database import SessionLocal, get_db
from ..deps import Settings, get_settings, require_scheduler_or_admin
from ..services.capi_health import HealthTracker
from ..services.capi_outbox_processor import CapiOutboxProcessor
from ..services.capi_outbox_service import requeue_event, resend_event
from ..telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/capi",
    tags=["Meta CAPI"],
    dependencies=[Depends(require_scheduler_or_admin)],
)


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Shared outbound client created on app startup."""
    client = getattr(request.app.state, "capi_http_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CAPI HTTP client not initialized",
        )
    return client


def get_outbox_processor(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    settings: Settings = Depends(get_settings),
) -> CapiOutboxProcessor:
    return CapiOutboxProcessor(session_factory, http_client, settings)


@router.post(
    "/outbox/process",
    response_model=schemas.OutboxRunSummaryResponse,
    summary="Run one outbox delivery pass",
    description="""
    Delivers due conversion events to Meta, tenant by tenant.

    Event-level failures are recorded on the events and reported in the
    summary; only a failure to select the batch returns an error.
    """,
)
async def process_outbox(processor: CapiOutboxProcessor = Depends(get_outbox_processor)):
    try:
        summary = await processor.process_batch()
    except SQLAlchemyError as exc:
        logger.exception("[CAPI_OUTBOX] Batch selection failed")
        capture_exception(exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Outbox batch selection failed",
        )
    return summary


@router.get(
    "/health",
    response_model=schemas.CapiHealthListResponse,
    summary="Delivery health for all tenants",
)
def list_health(db: Session = Depends(get_db)):
    return {"tenants": HealthTracker(db).list_stats()}


@router.get(
    "/health/{organization_id}",
    response_model=schemas.CapiHealthStatsResponse,
    summary="Delivery health for one tenant",
)
def get_health(organization_id: UUID, db: Session = Depends(get_db)):
    snapshot = HealthTracker(db).get_stats(organization_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No delivery history for organization")
    return snapshot


@router.post(
    "/events/{event_id}/dry-run",
    response_model=schemas.DryRunResponse,
    summary="Preview the request for one event",
    description="""
    Builds the exact request body that would be sent for the outbox row,
    with the access token redacted. Never sends and never modifies the event.
    """,
)
def dry_run_event(event_id: UUID, processor: CapiOutboxProcessor = Depends(get_outbox_processor)):
    report = processor.dry_run(event_id)
    if report is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return report


@router.post(
    "/events/{event_id}/requeue",
    response_model=schemas.RequeueResponse,
    summary="Re-queue a failed event",
)
def requeue(event_id: UUID, db: Session = Depends(get_db), principal: str = Depends(require_scheduler_or_admin)):
    try:
        event = requeue_event(db, event_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")

    logger.info("[CAPI_OUTBOX] Event %s re-queued by %s", event.id, principal)
    return schemas.RequeueResponse(
        id=event.id,
        event_id=event.event_id,
        status=event.status.value,
        retry_count=event.retry_count,
        next_retry_at=event.next_retry_at,
    )


@router.post(
    "/events/{event_id}/resend",
    response_model=schemas.RequeueResponse,
    summary="Resend an event with corrected identity data",
)
def resend(
    event_id: UUID,
    payload: schemas.ResendRequest,
    db: Session = Depends(get_db),
    principal: str = Depends(require_scheduler_or_admin),
):
    """Merge corrected fields into the event and queue it again under the same event_id."""
    try:
        event = resend_event(
            db,
            event_id,
            raw_user_data=payload.user_data,
            fbp=payload.fbp,
            fbc=payload.fbc,
            external_id=payload.external_id,
            client_ip_address=payload.client_ip_address,
            client_user_agent=payload.client_user_agent,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")

    logger.info("[CAPI_OUTBOX] Event %s queued for resend by %s", event.id, principal)
    return schemas.RequeueResponse(
        id=event.id,
        event_id=event.event_id,
        status=event.status.value,
        retry_count=event.retry_count,
        next_retry_at=event.next_retry_at,
    )
