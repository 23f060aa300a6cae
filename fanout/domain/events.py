from __future__ import annotations

from typing import Any, Literal, TypedDict


class JobProgressData(TypedDict):
    job_id: str
    status: str
    target_count: int
    sent_count: int
    failed_count: int
    progress_percent: int
    completed_at: str | None


class JobEvent(TypedDict, total=False):
    type: Literal["job.status", "job.progress", "job.terminal"]
    data: dict[str, Any]
