from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from fanout.core.errors import JobValidationError
from fanout.domain.records import CHANNEL_ALERT, CHANNEL_BROADCAST, TARGET_EXPLICIT, TARGET_GLOBAL


BROADCAST_KINDS = ("INFO", "SUCCESS", "WARNING", "ANNOUNCEMENT")
ALERT_SEVERITIES = ("CRITICAL", "HIGH", "WARNING")
KINDS_BY_CHANNEL = {
    CHANNEL_BROADCAST: BROADCAST_KINDS,
    CHANNEL_ALERT: ALERT_SEVERITIES,
}

SUBJECT_MAX_LENGTH = 100
BODY_MAX_LENGTH = 500
# Operator broadcasts need a meaningful title and message; alerts carry short event names.
BROADCAST_SUBJECT_MIN_LENGTH = 3
BROADCAST_BODY_MIN_LENGTH = 10

# Tab, newline and carriage return stay allowed; other C0 controls and DEL are rejected.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


class TargetSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: Literal["GLOBAL", "EXPLICIT"]
    recipient_ids: tuple[str, ...] = ()

    @property
    def is_global(self) -> bool:
        return self.mode == TARGET_GLOBAL

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Any:
        # Accept the shorthand forms clients send: "GLOBAL", a bare id list, or {recipientIds: [...]}.
        if isinstance(value, str):
            return {"mode": value.strip().upper()}
        if isinstance(value, (list, tuple)):
            return {"mode": TARGET_EXPLICIT, "recipient_ids": value}
        if isinstance(value, dict):
            ids = value.get("recipient_ids", value.get("recipientIds"))
            mode = value.get("mode") or (TARGET_EXPLICIT if ids is not None else None)
            coerced: dict[str, Any] = {"mode": str(mode).upper() if mode else mode}
            if ids is not None:
                coerced["recipient_ids"] = ids
            return coerced
        return value

    @field_validator("recipient_ids")
    @classmethod
    def _clean_ids(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(item.strip() for item in value)
        if any(not item for item in cleaned):
            raise ValueError("recipient ids must be non-empty strings")
        return cleaned

    @model_validator(mode="after")
    def _check_mode(self) -> "TargetSpec":
        if self.mode == TARGET_EXPLICIT and not self.recipient_ids:
            raise ValueError("explicit target requires at least one recipient id")
        if self.mode == TARGET_GLOBAL and self.recipient_ids:
            raise ValueError("global target does not accept recipient ids")
        return self


class JobRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    channel: Literal["broadcast", "alert"] = CHANNEL_BROADCAST
    kind: str
    subject: str = Field(min_length=1, max_length=SUBJECT_MAX_LENGTH)
    body: str = Field(min_length=1, max_length=BODY_MAX_LENGTH)
    target: TargetSpec
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("subject", "body", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("subject", "body")
    @classmethod
    def _reject_control_chars(cls, value: str) -> str:
        if _CONTROL_CHARS.search(value):
            raise ValueError("control characters are not allowed")
        return value

    @model_validator(mode="after")
    def _check_channel_rules(self) -> "JobRequest":
        allowed = KINDS_BY_CHANNEL[self.channel]
        if self.kind not in allowed:
            raise ValueError(f"kind must be one of {', '.join(allowed)} for channel {self.channel}")
        if self.channel == CHANNEL_BROADCAST:
            if len(self.subject) < BROADCAST_SUBJECT_MIN_LENGTH:
                raise ValueError(f"subject must be at least {BROADCAST_SUBJECT_MIN_LENGTH} characters")
            if len(self.body) < BROADCAST_BODY_MIN_LENGTH:
                raise ValueError(f"body must be at least {BROADCAST_BODY_MIN_LENGTH} characters")
        return self


def build_job_request(data: dict[str, Any]) -> JobRequest:
    # Translate pydantic failures into the engine's validation error so callers see one type.
    try:
        return JobRequest.model_validate(data)
    except ValidationError as exc:
        errors = [
            {
                "loc": ".".join(str(part) for part in err.get("loc", ())),
                "msg": err.get("msg", "invalid value"),
            }
            for err in exc.errors()
        ]
        raise JobValidationError("invalid job request", errors=errors) from exc
