from __future__ import annotations

import json

import httpx
import pytest

from fanout.core.errors import PermanentDeliveryError, TransientDeliveryError
from fanout.providers.transport.webhook import (
    HEADER_PAYLOAD_SHA256,
    HEADER_RECIPIENT_ID,
    HEADER_SIGNATURE,
    WebhookTransport,
    classify_http_error,
    compute_signature,
    payload_sha256,
)


def _transport(handler) -> WebhookTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookTransport(url_template="https://hooks.test/{recipient_id}", secret="s3cret", client=client)


@pytest.mark.asyncio
async def test_successful_delivery_is_signed() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    transport = _transport(handler)
    await transport.deliver("user-7", {"job_id": "job-1", "subject": "Hello"})
    await transport.aclose()

    request = seen[0]
    assert str(request.url) == "https://hooks.test/user-7"
    assert request.headers[HEADER_RECIPIENT_ID] == "user-7"
    raw = request.content
    assert request.headers[HEADER_PAYLOAD_SHA256] == payload_sha256(raw)
    assert request.headers[HEADER_SIGNATURE] == compute_signature(raw, "s3cret")
    assert json.loads(raw)["recipient_id"] == "user-7"


@pytest.mark.asyncio
async def test_client_errors_are_permanent() -> None:
    transport = _transport(lambda request: httpx.Response(404, json={"reason": "UNKNOWN_RECIPIENT"}))
    with pytest.raises(PermanentDeliveryError) as exc_info:
        await transport.deliver("ghost", {"job_id": "job-1"})
    assert exc_info.value.reason == "unknown_recipient"
    await transport.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [408, 429, 500, 503])
async def test_throttling_and_server_errors_are_transient(status_code: int) -> None:
    transport = _transport(lambda request: httpx.Response(status_code))
    with pytest.raises(TransientDeliveryError) as exc_info:
        await transport.deliver("user-1", {"job_id": "job-1"})
    assert exc_info.value.reason == f"http_{status_code}"
    await transport.aclose()


@pytest.mark.asyncio
async def test_connection_errors_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    transport = _transport(handler)
    with pytest.raises(TransientDeliveryError) as exc_info:
        await transport.deliver("user-1", {"job_id": "job-1"})
    assert exc_info.value.reason == "transport_connecterror"
    await transport.aclose()


def test_timeouts_classify_as_transient() -> None:
    error = classify_http_error(httpx.ReadTimeout("slow"))
    assert isinstance(error, TransientDeliveryError)
    assert error.reason == "timeout"
