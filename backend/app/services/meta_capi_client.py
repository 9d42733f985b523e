"""Meta Conversions API (CAPI) delivery client.

WHAT:
    Performs exactly one POST of one built event to
    `{base_url}/{api_version}/{pixel_id}/events` and reports the outcome.

WHY:
    Retry policy lives in the outbox processor. This client never retries
    and never raises for delivery failures; it returns a `DeliveryResult`
    with enough detail (status, trace id, truncated body) for an operator to
    diagnose a failed event.

    Outcomes:
        - sent:            2xx and events_received >= 1
        - rejected:        2xx but Meta accepted zero events
        - transport_error: non-2xx, network failure or timeout

    A timeout is never treated as success, even though Meta may have
    received the event; the stable event_id lets Meta deduplicate the retry.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api/using-the-api
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.services.capi_event_builder import build_request_body

logger = logging.getLogger(__name__)

OUTCOME_SENT = "sent"
OUTCOME_REJECTED = "rejected"
OUTCOME_TRANSPORT_ERROR = "transport_error"

ERROR_DESTINATION_REJECTED = "destination_rejected"
ERROR_TRANSPORT = "transport_error"

MAX_RESPONSE_BODY_CHARS = 2000


@dataclass
class DeliveryResult:
    outcome: str
    status_code: Optional[int] = None
    events_received: Optional[int] = None
    fbtrace_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    response_body: Optional[str] = None
    response_json: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.outcome == OUTCOME_SENT

    def response_metadata(self) -> Dict[str, Any]:
        """Compact response record stored on the outbox row."""
        return {
            "status_code": self.status_code,
            "events_received": self.events_received,
            "fbtrace_id": self.fbtrace_id,
            "messages": (self.response_json or {}).get("messages"),
        }


def _truncate(text: Optional[str], limit: int = MAX_RESPONSE_BODY_CHARS) -> Optional[str]:
    if text is None:
        return None
    return text if len(text) <= limit else text[:limit]


def _parse_json(response: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class MetaCAPIClient:
    """Send single server-side events to Meta.

    Usage:
        ```python
        async with httpx.AsyncClient(timeout=30.0) as http:
            client = MetaCAPIClient(http)
            result = await client.send("123456", token, event_payload)
        ```
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = "https://graph.facebook.com",
        api_version: str = "v22.0",
        timeout: Optional[float] = None,
    ):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout

    def events_url(self, pixel_id: str) -> str:
        return f"{self.base_url}/{self.api_version}/{pixel_id}/events"

    async def send(
        self,
        pixel_id: str,
        access_token: str,
        event: Dict[str, Any],
        test_event_code: Optional[str] = None,
    ) -> DeliveryResult:
        """POST one event. Never raises for HTTP or network failures."""
        body = build_request_body(event, access_token, test_event_code)

        logger.info(
            "[META_CAPI] Sending %s %s to pixel %s",
            event.get("event_name"), event.get("event_id"), pixel_id,
            extra={"test_mode": bool(test_event_code)},
        )

        kwargs: Dict[str, Any] = {"json": body}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout

        try:
            response = await self.http_client.post(self.events_url(pixel_id), **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("[META_CAPI] Timeout sending to pixel %s: %s", pixel_id, exc)
            return DeliveryResult(
                outcome=OUTCOME_TRANSPORT_ERROR,
                error_kind=ERROR_TRANSPORT,
                error_message=f"Timeout: {exc}",
            )
        except httpx.HTTPError as exc:
            logger.warning("[META_CAPI] Network error sending to pixel %s: %s", pixel_id, exc)
            return DeliveryResult(
                outcome=OUTCOME_TRANSPORT_ERROR,
                error_kind=ERROR_TRANSPORT,
                error_message=f"Network error: {exc}",
            )

        return self._interpret(pixel_id, response)

    def _interpret(self, pixel_id: str, response: httpx.Response) -> DeliveryResult:
        data = _parse_json(response)
        body_text = _truncate(response.text)
        fbtrace_id = (data or {}).get("fbtrace_id")

        if not response.is_success:
            error = (data or {}).get("error")
            if isinstance(error, dict):
                fbtrace_id = fbtrace_id or error.get("fbtrace_id")
                message = error.get("message") or body_text
                error_kind = ERROR_DESTINATION_REJECTED
            else:
                message = body_text or f"HTTP {response.status_code}"
                error_kind = ERROR_TRANSPORT

            logger.error(
                "[META_CAPI] API error for pixel %s: %s - %s",
                pixel_id, response.status_code, message,
                extra={"fbtrace_id": fbtrace_id},
            )
            return DeliveryResult(
                outcome=OUTCOME_TRANSPORT_ERROR,
                status_code=response.status_code,
                fbtrace_id=fbtrace_id,
                error_kind=error_kind,
                error_message=f"HTTP {response.status_code}: {message}",
                response_body=body_text,
                response_json=data,
            )

        events_received = (data or {}).get("events_received")
        if not isinstance(events_received, int) or isinstance(events_received, bool):
            events_received = 0

        if events_received < 1:
            logger.warning(
                "[META_CAPI] Pixel %s accepted 0 events (fbtrace_id=%s)", pixel_id, fbtrace_id,
            )
            return DeliveryResult(
                outcome=OUTCOME_REJECTED,
                status_code=response.status_code,
                events_received=events_received,
                fbtrace_id=fbtrace_id,
                error_kind=ERROR_DESTINATION_REJECTED,
                error_message="Meta accepted 0 events",
                response_body=body_text,
                response_json=data,
            )

        logger.info(
            "[META_CAPI] Success: %d event(s) received by pixel %s",
            events_received, pixel_id,
            extra={"fbtrace_id": fbtrace_id},
        )
        return DeliveryResult(
            outcome=OUTCOME_SENT,
            status_code=response.status_code,
            events_received=events_received,
            fbtrace_id=fbtrace_id,
            response_body=body_text,
            response_json=data,
        )
