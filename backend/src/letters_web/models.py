from __future__ import annotations

import re
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

AttemptStatus = Literal["sent", "failed"]
FailureKind = Literal["notifier", "notifier_exception", "recipient_missing", "store_write", "unexpected"]
RunStatus = Literal["completed", "aborted"]
RunTrigger = Literal["schedule", "manual"]


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    timestamp: datetime


class DeliveryAttemptResult(BaseModel):
    letter_id: str
    status: AttemptStatus
    attempted_at: datetime
    failure_kind: FailureKind | None = None
    error: str | None = None
    provider_message_id: str | None = None


class DeliveryRunResponse(BaseModel):
    run_id: str
    trigger: RunTrigger
    status: RunStatus
    window_start: datetime | None = None
    window_end: datetime | None = None
    started_at: datetime
    finished_at: datetime
    processed_count: int
    sent_count: int
    failed_count: int
    notifier_failed_count: int
    store_failed_count: int
    carried_over_count: int
    error: str | None = None
    results: list[DeliveryAttemptResult] = Field(default_factory=list)


class DeliveryRunListResponse(BaseModel):
    items: list[DeliveryRunResponse]


class DeliveryScheduleResponse(BaseModel):
    enabled: bool
    running: bool
    cron: str
    timezone: str
    next_run_at: datetime | None = None
    runner_state: Literal["idle", "running"]


class EmailConfigDetails(BaseModel):
    sender_type: str
    has_api_key: bool
    has_from_email: bool
    has_from_name: bool
    from_email: str
    from_name: str


class EmailConfigResponse(BaseModel):
    configured: bool
    config: EmailConfigDetails
    issues: list[str] = Field(default_factory=list)


class EmailTestRequest(BaseModel):
    email: str | None = Field(default=None, max_length=320)

    @field_validator("email")
    @classmethod
    def _strip_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


class EmailTestResponse(BaseModel):
    sent: bool
    message_id: str | None = None
