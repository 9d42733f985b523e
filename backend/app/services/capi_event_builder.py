"""Build Meta CAPI wire payloads from outbox rows.

WHAT:
    - Derives the idempotency `event_id` for new conversions.
    - Turns a stored `ConversionEvent` into the exact `data[]` entry Meta
      expects, filtering identity fields by privacy mode.
    - Wraps an event into the request body.

WHY:
    Meta deduplicates on (pixel, event_name, event_id). Enrichment-only
    events share a conversion with the donation form's own pixel, so their
    event_id must be reproducible from the upstream transaction alone:

        sha256("enrichment:{organization_id}:{source_id}")

    Primary events get a random id once at ingestion; it is stored and
    reused on every retry.

    Meta rejects events older than 7 days or too far in the future, so the
    transaction time is validated here and a bad row fails fast instead of
    burning its retry budget.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/server-event
    - https://developers.facebook.com/docs/marketing-api/conversions-api/deduplicate-pixel-and-server-events
"""

import hashlib
import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from app.models import ConversionEvent, as_utc
from app.services.capi_errors import CapiValidationError
from app.services.capi_privacy import filter_user_data

logger = logging.getLogger(__name__)

ENRICHMENT_MODE_TAG = "enrichment"

ACTION_SOURCE_WEBSITE = "website"
ACTION_SOURCE_SYSTEM = "system_generated"

PURCHASE_EVENT_NAMES = frozenset({"Purchase", "Donate"})

MAX_EVENT_AGE = timedelta(days=7)
MAX_FUTURE_SKEW = timedelta(minutes=10)


def derive_event_id(organization_id, source_id: Optional[str], is_enrichment_only: bool) -> str:
    """Compute the event_id for a newly ingested conversion.

    Enrichment-only ids are deterministic; primary ids are random and must be
    persisted by the caller.
    """
    if is_enrichment_only:
        if not source_id:
            raise CapiValidationError("Enrichment-only events require an upstream source_id")
        material = f"{ENRICHMENT_MODE_TAG}:{organization_id}:{source_id}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()
    return str(uuid.uuid4())


def generate_dedupe_key(event_name: str, organization_id, source_id: str) -> str:
    return f"{event_name}:{organization_id}:{source_id}"


def resolve_event_id(event: ConversionEvent) -> str:
    """Return the id to present to Meta for a stored event.

    Stored ids always win. Only an enrichment row that somehow lost its id
    can be re-derived, because primary ids are not reproducible.
    """
    if event.event_id:
        return event.event_id
    if event.is_enrichment_only:
        return derive_event_id(event.organization_id, event.source_id, True)
    raise CapiValidationError("Primary event has no stored event_id")


def _parse_numeric(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _validate_event_time(
    event_time: Optional[datetime],
    now: datetime,
    max_age: timedelta,
    max_future_skew: timedelta,
) -> datetime:
    if event_time is None:
        raise CapiValidationError("event_time is missing")
    if not isinstance(event_time, datetime):
        raise CapiValidationError(f"event_time is malformed: {event_time!r}")

    event_time = as_utc(event_time)
    if event_time < now - max_age:
        raise CapiValidationError(f"event_time {event_time.isoformat()} is older than {max_age.days} days")
    if event_time > now + max_future_skew:
        raise CapiValidationError(f"event_time {event_time.isoformat()} is in the future")
    return event_time


def build_custom_data(event_name: str, custom_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Pass stored custom data through and check purchase fields.

    Attribution keys (campaign ids, refcodes) are sent as custom properties;
    only `value` and `currency` are normalized.
    """
    filtered = {key: value for key, value in (custom_data or {}).items() if value is not None}

    if event_name in PURCHASE_EVENT_NAMES:
        value = _parse_numeric(filtered.get("value"))
        if value is None:
            raise CapiValidationError(f"{event_name} event requires a numeric custom_data.value")
        currency = filtered.get("currency")
        if not isinstance(currency, str) or not currency.strip():
            raise CapiValidationError(f"{event_name} event requires custom_data.currency")
        filtered["value"] = value
        filtered["currency"] = currency.strip().upper()

    return filtered


def build_capi_event(
    event: ConversionEvent,
    privacy_mode: str,
    allowed_fields: Iterable[str],
    now: Optional[datetime] = None,
    *,
    max_age: timedelta = MAX_EVENT_AGE,
    max_future_skew: timedelta = MAX_FUTURE_SKEW,
) -> Dict[str, Any]:
    """Build the `data[]` entry for one stored event.

    Args:
        event: Outbox row; `user_data_hashed` already holds digests.
        privacy_mode: Tenant privacy mode (logged only; `allowed_fields` is
            the resolved allow-list for it).
        allowed_fields: Keys permitted in user_data.
        now: Reference time for event_time validation.

    Raises:
        CapiValidationError: Payload precondition failed.
    """
    now = now or datetime.now(timezone.utc)
    event_time = _validate_event_time(event.event_time, now, max_age, max_future_skew)
    event_id = resolve_event_id(event)

    extras = {
        "external_id": event.external_id,
        "fbp": event.fbp,
        "fbc": event.fbc,
    }
    user_data = filter_user_data(event.user_data_hashed or {}, allowed_fields, extras)
    if not user_data:
        raise CapiValidationError(f"No user_data fields permitted under privacy mode {privacy_mode!r}")

    payload: Dict[str, Any] = {
        "event_name": event.event_name,
        "event_time": int(event_time.timestamp()),
        "event_id": event_id,
        "action_source": ACTION_SOURCE_WEBSITE if (event.fbp or event.fbc) else ACTION_SOURCE_SYSTEM,
        "user_data": user_data,
    }
    if event.event_source_url:
        payload["event_source_url"] = event.event_source_url

    custom_data = build_custom_data(event.event_name, event.custom_data)
    if custom_data:
        payload["custom_data"] = custom_data

    return payload


def build_request_body(
    event_payload: Dict[str, Any],
    access_token: str,
    test_event_code: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "data": [event_payload],
        "access_token": access_token,
    }
    if test_event_code:
        body["test_event_code"] = test_event_code
    return body
