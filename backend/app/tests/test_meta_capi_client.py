"""Unit tests for the Meta CAPI delivery client.

WHAT:
    Maps HTTP responses and transport failures onto the three delivery
    outcomes using httpx.MockTransport.

WHY:
    A 200 with zero events received is a failure, and a timeout must never
    be treated as success.

REFERENCES:
    - app/services/meta_capi_client.py (module under test)
"""

import json

import httpx
import pytest

from app.services.meta_capi_client import MAX_RESPONSE_BODY_CHARS, MetaCAPIClient

EVENT = {"event_name": "Purchase", "event_id": "evt-1", "user_data": {"em": "x"}}


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_sent_when_events_received():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"events_received": 1, "fbtrace_id": "trace-1"})

    async with _client(handler) as http:
        result = await MetaCAPIClient(http, api_version="v22.0").send("123", "tok", EVENT, "TEST9")

    assert result.outcome == "sent"
    assert result.ok
    assert result.events_received == 1
    assert result.fbtrace_id == "trace-1"

    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "https://graph.facebook.com/v22.0/123/events"
    body = json.loads(request.content)
    assert body == {"data": [EVENT], "access_token": "tok", "test_event_code": "TEST9"}


@pytest.mark.asyncio
async def test_rejected_when_zero_events_received():
    def handler(request):
        return httpx.Response(200, json={"events_received": 0, "fbtrace_id": "trace-0"})

    async with _client(handler) as http:
        result = await MetaCAPIClient(http).send("123", "tok", EVENT)

    assert result.outcome == "rejected"
    assert result.error_kind == "destination_rejected"
    assert result.status_code == 200


@pytest.mark.asyncio
async def test_structured_error_body_is_destination_rejected():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "Invalid parameter", "code": 100, "fbtrace_id": "t-err"}})

    async with _client(handler) as http:
        result = await MetaCAPIClient(http).send("123", "tok", EVENT)

    assert result.outcome == "transport_error"
    assert result.error_kind == "destination_rejected"
    assert result.status_code == 400
    assert "Invalid parameter" in result.error_message
    assert result.fbtrace_id == "t-err"


@pytest.mark.asyncio
async def test_server_error_without_json_is_transport_error():
    def handler(request):
        return httpx.Response(503, text="upstream unavailable")

    async with _client(handler) as http:
        result = await MetaCAPIClient(http).send("123", "tok", EVENT)

    assert result.outcome == "transport_error"
    assert result.error_kind == "transport_error"
    assert result.response_body == "upstream unavailable"


@pytest.mark.asyncio
async def test_timeout_is_transport_error_not_success():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with _client(handler) as http:
        result = await MetaCAPIClient(http).send("123", "tok", EVENT)

    assert result.outcome == "transport_error"
    assert not result.ok
    assert result.status_code is None


@pytest.mark.asyncio
async def test_network_error_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as http:
        result = await MetaCAPIClient(http).send("123", "tok", EVENT)

    assert result.outcome == "transport_error"
    assert "connection refused" in result.error_message


@pytest.mark.asyncio
async def test_single_attempt_only():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, text="boom")

    async with _client(handler) as http:
        await MetaCAPIClient(http).send("123", "tok", EVENT)

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_response_body_is_truncated():
    def handler(request):
        return httpx.Response(500, text="x" * (MAX_RESPONSE_BODY_CHARS + 500))

    async with _client(handler) as http:
        result = await MetaCAPIClient(http).send("123", "tok", EVENT)

    assert len(result.response_body) == MAX_RESPONSE_BODY_CHARS
