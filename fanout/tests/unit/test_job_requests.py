from __future__ import annotations

import pytest

from fanout.core.errors import JobValidationError
from fanout.domain.requests import TargetSpec, build_job_request
from fanout.tests.utils.engine import broadcast_request, explicit


def _locs(exc: JobValidationError) -> list[str]:
    return [error["loc"] for error in exc.errors]


def test_valid_request_is_normalized() -> None:
    request = build_job_request(broadcast_request(kind=" warning ", subject="  Release 2.4  "))
    assert request.kind == "WARNING"
    assert request.subject == "Release 2.4"
    assert request.target.is_global


@pytest.mark.parametrize(
    "overrides",
    [
        {"kind": "URGENT"},
        {"subject": "ab"},
        {"subject": "x" * 101},
        {"body": "too short"},
        {"body": "y" * 501},
        {"body": "contains a bell \x07 character"},
    ],
)
def test_invalid_content_is_rejected(overrides: dict) -> None:
    with pytest.raises(JobValidationError) as exc_info:
        build_job_request(broadcast_request(**overrides))
    assert exc_info.value.errors


def test_newlines_and_tabs_are_allowed() -> None:
    request = build_job_request(broadcast_request(body="Line one\nLine two\tindented"))
    assert "\n" in request.body


def test_explicit_target_requires_recipients() -> None:
    with pytest.raises(JobValidationError) as exc_info:
        build_job_request(broadcast_request(target=explicit([])))
    assert any(loc.startswith("target") for loc in _locs(exc_info.value))


def test_global_target_rejects_recipient_ids() -> None:
    with pytest.raises(JobValidationError):
        build_job_request(broadcast_request(target={"mode": "GLOBAL", "recipient_ids": ["u1"]}))


def test_target_shorthands() -> None:
    assert TargetSpec.model_validate("global").is_global
    listed = TargetSpec.model_validate(["u1", "u2"])
    assert listed.mode == "EXPLICIT"
    assert listed.recipient_ids == ("u1", "u2")
    camel = TargetSpec.model_validate({"recipientIds": ["u3"]})
    assert camel.recipient_ids == ("u3",)


def test_alert_channel_uses_severities() -> None:
    request = build_job_request(
        {
            "channel": "alert",
            "kind": "critical",
            "subject": "db",
            "body": "down",
            "target": explicit(["ops-1"]),
        }
    )
    assert request.kind == "CRITICAL"
    with pytest.raises(JobValidationError):
        build_job_request(
            {"channel": "alert", "kind": "INFO", "subject": "db", "body": "down", "target": explicit(["ops-1"])}
        )
