"""Outbox writes owned by ingestion and operators.

WHAT:
    - `enqueue_conversion_event`: turn an upstream transaction into a
      pending outbox row (hash PII once, derive ids, upsert).
    - `requeue_event`: operator reset of a failed event.
    - `resend_event`: operator correction of identity data (for example a
      truncated click id) on any event, followed by redelivery under the
      same event_id.

WHY:
    Webhooks and backfills may deliver the same transaction many times.
    Rows are keyed on (organization_id, dedupe_key) and upserted, and the
    stored event_id is never regenerated, so Meta sees one logical event no
    matter how often it is ingested or retried.

REFERENCES:
    - app/services/capi_privacy.py (hash_user_data_for_storage)
    - app/services/capi_event_builder.py (derive_event_id)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import ConversionEvent, ConversionStatusEnum, MetaCapiConfig
from app.services.capi_event_builder import derive_event_id, generate_dedupe_key
from app.services.capi_privacy import (
    calculate_match_score,
    hash_user_data_for_storage,
    match_quality_label,
)

logger = logging.getLogger(__name__)

DEFAULT_EVENT_NAME = "Purchase"


def _load_config(db: Session, organization_id: UUID) -> Optional[MetaCapiConfig]:
    return (
        db.query(MetaCapiConfig)
        .filter(MetaCapiConfig.organization_id == organization_id)
        .first()
    )


def _find_by_dedupe_key(db: Session, organization_id: UUID, dedupe_key: str) -> Optional[ConversionEvent]:
    return (
        db.query(ConversionEvent)
        .filter(
            ConversionEvent.organization_id == organization_id,
            ConversionEvent.dedupe_key == dedupe_key,
        )
        .first()
    )


def _hash_identity(
    raw_user_data: Optional[Mapping[str, Any]],
    client_ip_address: Optional[str],
    client_user_agent: Optional[str],
) -> Dict[str, str]:
    hashed = hash_user_data_for_storage(raw_user_data or {})
    if client_ip_address:
        hashed["client_ip_address"] = client_ip_address
    if client_user_agent:
        hashed["client_user_agent"] = client_user_agent
    return hashed


def _merge_identity(
    event: ConversionEvent,
    hashed: Mapping[str, str],
    *,
    fbp: Optional[str],
    fbc: Optional[str],
    external_id: Optional[str],
) -> None:
    """Overlay new identity data on a stored row and re-score it."""
    event.user_data_hashed = {**(event.user_data_hashed or {}), **hashed}
    event.fbp = fbp or event.fbp
    event.fbc = fbc or event.fbc
    event.external_id = external_id or event.external_id
    event.match_score = calculate_match_score(
        event.user_data_hashed,
        {"external_id": event.external_id, "fbp": event.fbp, "fbc": event.fbc},
    )
    event.match_quality = match_quality_label(event.match_score, event.user_data_hashed)


def enqueue_conversion_event(
    db: Session,
    organization_id: UUID,
    source_id: str,
    raw_user_data: Mapping[str, Any],
    custom_data: Optional[Dict[str, Any]],
    event_time: datetime,
    *,
    event_name: Optional[str] = None,
    event_source_url: Optional[str] = None,
    fbp: Optional[str] = None,
    fbc: Optional[str] = None,
    external_id: Optional[str] = None,
    client_ip_address: Optional[str] = None,
    client_user_agent: Optional[str] = None,
    source_type: str = "webhook",
    is_enrichment_only: Optional[bool] = None,
    pixel_id: Optional[str] = None,
) -> ConversionEvent:
    """Create or refresh the outbox row for an upstream transaction.

    Args:
        raw_user_data: Plaintext identity fields keyed by kind (email, phone,
            first_name, last_name, city, state, zip, country). Only digests
            are stored.
        is_enrichment_only: Defaults to the tenant's
            `upstream_owns_conversion` flag.

    Returns:
        The stored ConversionEvent. Rows already `sent` are returned as-is.
    """
    if not source_id:
        raise ValueError("source_id is required")

    config = _load_config(db, organization_id)
    if event_name is None:
        event_name = config.donation_event_name if config else DEFAULT_EVENT_NAME
    if is_enrichment_only is None:
        is_enrichment_only = bool(config and config.upstream_owns_conversion)

    hashed = _hash_identity(raw_user_data, client_ip_address, client_user_agent)

    extras = {"external_id": external_id, "fbp": fbp, "fbc": fbc}
    score = calculate_match_score(hashed, extras)
    quality = match_quality_label(score, hashed)

    dedupe_key = generate_dedupe_key(event_name, organization_id, source_id)
    now = datetime.now(timezone.utc)

    existing = _find_by_dedupe_key(db, organization_id, dedupe_key)
    if existing is None:
        event = ConversionEvent(
            organization_id=organization_id,
            event_id=derive_event_id(organization_id, source_id, is_enrichment_only),
            dedupe_key=dedupe_key,
            source_type=source_type,
            source_id=str(source_id),
            event_name=event_name,
            event_time=event_time,
            event_source_url=event_source_url,
            user_data_hashed=hashed,
            custom_data=dict(custom_data or {}),
            fbp=fbp,
            fbc=fbc,
            external_id=external_id,
            pixel_id=pixel_id,
            is_enrichment_only=is_enrichment_only,
            match_score=score,
            match_quality=quality,
            status=ConversionStatusEnum.pending,
            retry_count=0,
            next_retry_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(event)
        try:
            db.commit()
        except IntegrityError:
            # Lost an insert race with a concurrent ingestion of the same transaction.
            db.rollback()
            existing = _find_by_dedupe_key(db, organization_id, dedupe_key)
            if existing is None:
                raise
            logger.info("[CAPI_OUTBOX] Concurrent enqueue for %s, using existing row", dedupe_key)
            return existing

        logger.info(
            "[CAPI_OUTBOX] Enqueued %s for org %s (match %s/%d)",
            event_name, organization_id, quality, score,
        )
        return event

    if existing.status == ConversionStatusEnum.sent:
        logger.debug("[CAPI_OUTBOX] %s already delivered, not re-enqueued", dedupe_key)
        return existing

    # Refresh payload; identity and delivery state stay as they are.
    existing.event_time = event_time
    existing.event_source_url = event_source_url or existing.event_source_url
    existing.custom_data = {**(existing.custom_data or {}), **(custom_data or {})}
    existing.pixel_id = pixel_id or existing.pixel_id
    _merge_identity(existing, hashed, fbp=fbp, fbc=fbc, external_id=external_id)
    existing.updated_at = now
    db.commit()

    logger.info("[CAPI_OUTBOX] Refreshed existing outbox row %s", existing.id)
    return existing


def requeue_event(db: Session, event_pk: UUID) -> Optional[ConversionEvent]:
    """Reset a failed or pending event so the next pass picks it up.

    Returns None when the row does not exist.

    Raises:
        ValueError: Event is already sent or currently leased.
    """
    event = db.get(ConversionEvent, event_pk)
    if event is None:
        return None

    if event.status == ConversionStatusEnum.sent:
        raise ValueError("Event was already delivered")
    if event.status == ConversionStatusEnum.retrying:
        raise ValueError("Event is currently being processed")

    previous = event.retry_count
    now = datetime.now(timezone.utc)
    event.status = ConversionStatusEnum.pending
    event.retry_count = 0
    event.next_retry_at = now
    event.updated_at = now
    db.commit()

    logger.info("[CAPI_OUTBOX] Operator re-queued event %s (retry_count was %d)", event.id, previous)
    return event


def resend_event(
    db: Session,
    event_pk: UUID,
    *,
    raw_user_data: Optional[Mapping[str, Any]] = None,
    fbp: Optional[str] = None,
    fbc: Optional[str] = None,
    external_id: Optional[str] = None,
    client_ip_address: Optional[str] = None,
    client_user_agent: Optional[str] = None,
) -> Optional[ConversionEvent]:
    """Correct identity data on an event and deliver it again.

    WHAT:
        Merges the corrected fields (typically a full `fbc` that was stored
        truncated) into the row and puts it back in the queue.

    WHY:
        The row keeps its `event_id`, so Meta deduplicates the resend against
        the earlier delivery and keeps the newer match data. Works on `sent`
        rows, unlike `requeue_event`.

    Returns None when the row does not exist.

    Raises:
        ValueError: No corrected field was supplied, or the event is leased.
    """
    event = db.get(ConversionEvent, event_pk)
    if event is None:
        return None

    hashed = _hash_identity(raw_user_data, client_ip_address, client_user_agent)
    if not (hashed or fbp or fbc or external_id):
        raise ValueError("No corrected identity fields supplied")
    if event.status == ConversionStatusEnum.retrying:
        raise ValueError("Event is currently being processed")

    previous_status = event.status
    _merge_identity(event, hashed, fbp=fbp, fbc=fbc, external_id=external_id)

    now = datetime.now(timezone.utc)
    event.status = ConversionStatusEnum.pending
    event.retry_count = 0
    event.next_retry_at = now
    event.last_error = None
    event.delivered_at = None
    event.updated_at = now
    db.commit()

    logger.info(
        "[CAPI_OUTBOX] Event %s queued for resend with corrected identity (was %s, event_id kept)",
        event.id, previous_status.value,
    )
    return event
