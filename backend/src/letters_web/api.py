from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Query, status

from .config import Settings, email_config_flags, email_config_issues, get_settings, resolve_timezone
from .delivery import BatchRunSummary, DeliveryBatchRunner
from .delivery_runs import DeliveryRunRecord, DeliveryRunRepository, create_delivery_run_repository
from .letters import LetterRepository, create_letter_repository
from .models import (
    DeliveryAttemptResult,
    DeliveryRunListResponse,
    DeliveryRunResponse,
    DeliveryScheduleResponse,
    EmailConfigDetails,
    EmailConfigResponse,
    EmailTestRequest,
    EmailTestResponse,
    HealthResponse,
    is_valid_email,
)
from .notifier import HttpLetterNotifier, LetterContent, LetterNotifier, StubLetterNotifier
from .scheduler import DailyDeliverySchedule

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["letters"])
health_router = APIRouter(tags=["health"])


def _create_notifier(settings: Settings) -> LetterNotifier:
    if settings.notifier_sender_type == "http":
        issues = email_config_issues(settings)
        if issues:
            logger.warning("http notifier not configured (%s); letter delivery is disabled", "; ".join(issues))
            return StubLetterNotifier(enabled=False)
        return HttpLetterNotifier(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            from_email=settings.email_from,
            from_name=settings.email_from_name,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return StubLetterNotifier(enabled=settings.notifier_enabled)


def _delivery_timezone(settings: Settings):
    try:
        return resolve_timezone(settings.delivery_timezone)
    except ValueError:
        logger.warning("unknown DELIVERY_TIMEZONE %r, falling back to UTC", settings.delivery_timezone)
        return timezone.utc


delivery_tz = _delivery_timezone(_settings)
letter_repo: LetterRepository = create_letter_repository(
    backend=_settings.letter_store_backend,
    database_url=_settings.database_url,
)
run_repo: DeliveryRunRepository = create_delivery_run_repository(
    backend=_settings.delivery_run_store_backend,
    database_url=_settings.database_url,
)
notifier: LetterNotifier = _create_notifier(_settings)
delivery_runner = DeliveryBatchRunner(
    repository=letter_repo,
    notifier=notifier,
    run_repository=run_repo,
    tz=delivery_tz,
)
daily_schedule = DailyDeliverySchedule(
    delivery_runner,
    hour=_settings.delivery_schedule_hour,
    minute=_settings.delivery_schedule_minute,
    tz=delivery_tz,
)


def reset_runtime_state_for_tests() -> None:
    letter_repo.reset()
    run_repo.reset()


def _run_response_from_record(record: DeliveryRunRecord) -> DeliveryRunResponse:
    return DeliveryRunResponse(
        run_id=record.run_id,
        trigger=record.trigger,  # type: ignore[arg-type]
        status=record.status,  # type: ignore[arg-type]
        window_start=record.window_start,
        window_end=record.window_end,
        started_at=record.started_at,
        finished_at=record.finished_at,
        processed_count=record.processed_count,
        sent_count=record.sent_count,
        failed_count=record.failed_count,
        notifier_failed_count=record.notifier_failed_count,
        store_failed_count=record.store_failed_count,
        carried_over_count=record.carried_over_count,
        error=record.error,
        results=[DeliveryAttemptResult.model_validate(value) for value in record.outcomes()],
    )


def _run_response_from_summary(summary: BatchRunSummary) -> DeliveryRunResponse:
    return _run_response_from_record(summary.to_record())


@health_router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(timestamp=datetime.now(timezone.utc))


@router.post("/delivery/run/once", response_model=DeliveryRunResponse)
def run_delivery_once() -> DeliveryRunResponse:
    summary = delivery_runner.run_batch_now()
    return _run_response_from_summary(summary)


@router.get("/delivery/runs", response_model=DeliveryRunListResponse)
def list_delivery_runs(limit: int = Query(default=20, ge=1, le=200)) -> DeliveryRunListResponse:
    return DeliveryRunListResponse(items=[_run_response_from_record(value) for value in run_repo.list_runs(limit=limit)])


@router.get("/delivery/runs/latest", response_model=DeliveryRunResponse)
def get_latest_delivery_run() -> DeliveryRunResponse:
    record = run_repo.get_latest_run()
    if record is None:
        raise HTTPException(status_code=404, detail="no delivery runs recorded")
    return _run_response_from_record(record)


@router.get("/delivery/runs/{run_id}", response_model=DeliveryRunResponse)
def get_delivery_run(run_id: str) -> DeliveryRunResponse:
    record = run_repo.get_run(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"delivery run not found: {run_id}")
    return _run_response_from_record(record)


@router.get("/delivery/schedule", response_model=DeliveryScheduleResponse)
def get_delivery_schedule() -> DeliveryScheduleResponse:
    return DeliveryScheduleResponse(
        enabled=_settings.delivery_schedule_enabled,
        running=daily_schedule.is_running,
        cron=daily_schedule.cron_expression,
        timezone=str(delivery_tz),
        next_run_at=daily_schedule.next_run_at(),
        runner_state=delivery_runner.state,
    )


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.get("/admin/email-config", response_model=EmailConfigResponse)
def get_email_config() -> EmailConfigResponse:
    issues = email_config_issues(_settings)
    details = EmailConfigDetails(
        sender_type=_settings.notifier_sender_type,
        **email_config_flags(_settings),
        from_email=_settings.email_from or "Not set",
        from_name=_settings.email_from_name or "Not set",
    )
    return EmailConfigResponse(configured=not issues, config=details, issues=list(issues))


@router.post("/admin/test-email", response_model=EmailTestResponse)
def send_test_email(payload: EmailTestRequest) -> EmailTestResponse:
    if _settings.is_production:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "test endpoint not available in production")
    if not payload.email:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "email address is required")
    if not is_valid_email(payload.email):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "invalid email address format")

    now = datetime.now(timezone.utc)
    letter = LetterContent(
        title="Test Letter",
        content=(
            "This is a test email to verify that the email service is working correctly. "
            "If you receive this, everything is set up properly!"
        ),
        created_at=now,
        due_at=now,
    )
    result = notifier.send(payload.email, "Test User", letter)
    if not result.success:
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, result.error_detail or "failed to send test email")
    return EmailTestResponse(sent=True, message_id=result.message_id)
