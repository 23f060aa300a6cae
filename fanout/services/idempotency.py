from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import json
import logging
from typing import Any
from uuid import uuid4

from fanout.core.config import Settings
from fanout.core.errors import JobValidationError
from fanout.domain.records import Job
from fanout.domain.requests import JobRequest, build_job_request
from fanout.domain.state import JobStatus
from fanout.persistence.base import DeliveryStore


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
IDEMPOTENCY_REPLAYED_HEADER = "Idempotency-Replayed"


@dataclass(frozen=True)
class Admission:
    # Outcome of a submission: the job on file and whether this call created it.
    job: Job
    created: bool


def normalize_key(value: str | None, *, max_length: int) -> str:
    # Enforce idempotency key size constraints for storage safety.
    cleaned = (value or "").strip()
    if not cleaned:
        raise JobValidationError(
            "idempotency key is required",
            errors=[{"loc": "idempotency_key", "msg": "must be a non-empty string"}],
        )
    if len(cleaned) > max_length:
        raise JobValidationError(
            f"idempotency key exceeds {max_length} characters",
            errors=[{"loc": "idempotency_key", "msg": f"at most {max_length} characters"}],
        )
    return cleaned


def compute_request_hash(payload: Any) -> str:
    # Hash request payloads deterministically without persisting sensitive data.
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class IdempotencyGate:
    def __init__(self, *, store: DeliveryStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    def validate_request(self, request: JobRequest | dict[str, Any]) -> JobRequest:
        # Reject malformed requests before anything is reserved.
        job_request = request if isinstance(request, JobRequest) else build_job_request(request)
        explicit_max = self._settings.explicit_target_max
        if not job_request.target.is_global and len(job_request.target.recipient_ids) > explicit_max:
            raise JobValidationError(
                "too many explicit recipients",
                errors=[{"loc": "target.recipient_ids", "msg": f"at most {explicit_max} recipients"}],
            )
        return job_request

    def validate(self, idempotency_key: str | None, request: JobRequest | dict[str, Any]) -> tuple[str, JobRequest]:
        key = normalize_key(idempotency_key, max_length=self._settings.idempotency_key_max_length)
        return key, self.validate_request(request)

    async def reserve(self, key: str, request: JobRequest, *, created_by: str | None = None) -> Admission:
        request_hash = compute_request_hash(request.model_dump(mode="json"))
        candidate = Job(
            id=uuid4().hex,
            idempotency_key=key,
            channel=request.channel,
            kind=request.kind,
            subject=request.subject,
            body=request.body,
            target_mode=request.target.mode,
            target_ids=None if request.target.is_global else list(request.target.recipient_ids),
            status=JobStatus.PENDING,
            target_count=0,
            sent_count=0,
            failed_count=0,
            remaining_count=0,
            created_at=datetime.now(timezone.utc),
            created_by=created_by,
            request_hash=request_hash,
            metadata=dict(request.metadata),
        )
        # The store's insert is the single atomic reservation step.
        job, created = await self._store.create_job(candidate)
        if created:
            logger.info("job_reserved job_id=%s key=%s channel=%s", job.id, key, job.channel)
        elif job.request_hash and job.request_hash != request_hash:
            # Retries are expected to resend the same payload; keep the original job either way.
            logger.warning("idempotency_payload_mismatch key=%s job_id=%s", key, job.id)
        else:
            logger.info("job_duplicate_submission key=%s job_id=%s", key, job.id)
        return Admission(job=job, created=created)
