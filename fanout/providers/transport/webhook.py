from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

import httpx

from fanout.core.errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError


HEADER_SIGNATURE = "X-Fanout-Signature"
HEADER_PAYLOAD_SHA256 = "X-Fanout-Payload-Sha256"
HEADER_JOB_ID = "X-Fanout-Job-Id"
HEADER_RECIPIENT_ID = "X-Fanout-Recipient-Id"

# Request timeout and throttling are worth retrying even though they are 4xx.
_RETRYABLE_HTTP_4XX = {408, 429}


def serialize_payload(payload: dict[str, Any]) -> bytes:
    # Serialize deterministically so signatures stay stable across retries.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def payload_sha256(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def _response_error_reason(response: httpx.Response) -> str:
    # Prefer an explicit receiver reason so operators see why a recipient was rejected.
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if isinstance(payload, dict):
        reason = payload.get("reason")
        if isinstance(reason, str) and reason.strip():
            return reason.strip().lower()
    return f"http_{int(response.status_code)}"


def classify_http_error(exc: Exception) -> DeliveryError:
    # Map transport exceptions onto the retry policy: 4xx is permanent unless throttling/timeout.
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = int(exc.response.status_code)
        reason = _response_error_reason(exc.response)
        if 400 <= status_code < 500 and status_code not in _RETRYABLE_HTTP_4XX:
            return PermanentDeliveryError(reason)
        return TransientDeliveryError(reason)
    if isinstance(exc, httpx.TimeoutException):
        return TransientDeliveryError("timeout")
    if isinstance(exc, httpx.TransportError):
        return TransientDeliveryError(f"transport_{type(exc).__name__.lower()}")
    return TransientDeliveryError("retryable_failure")


class WebhookTransport:
    def __init__(
        self,
        *,
        url_template: str,
        secret: str | None = None,
        timeout_s: float = 8.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url_template = url_template
        self._secret = secret
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    def url_for(self, recipient_id: str) -> str:
        return self._url_template.replace("{recipient_id}", recipient_id)

    async def deliver(self, recipient_id: str, payload: dict[str, Any]) -> None:
        body = {**payload, "recipient_id": recipient_id}
        raw = serialize_payload(body)
        headers = {
            "Content-Type": "application/json",
            HEADER_PAYLOAD_SHA256: payload_sha256(raw),
            HEADER_JOB_ID: str(payload.get("job_id", "")),
            HEADER_RECIPIENT_ID: recipient_id,
        }
        if self._secret:
            headers[HEADER_SIGNATURE] = compute_signature(raw, self._secret)
        try:
            response = await self._client.post(self.url_for(recipient_id), content=raw, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc) from exc

    async def aclose(self) -> None:
        await self._client.aclose()
