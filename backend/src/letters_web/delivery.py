"""Background delivery of due letters.

A batch run scans the letter store for everything due before the end of the
current day that has not been sent, makes one notifier call per letter and
persists the resulting state. Runs never overlap.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone, tzinfo
from threading import Lock
from typing import Callable, Literal

from .delivery_runs import DeliveryRunRecord, DeliveryRunRepository
from .letters import DeliveryPatch, DueLetter, LetterRepository
from .notifier import LetterContent, LetterNotifier, NotifierResult, mask_email

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
RunTrigger = Literal["schedule", "manual"]
RunnerState = Literal["idle", "running"]
AttemptStatus = Literal["sent", "failed"]
FailureKind = Literal["notifier", "notifier_exception", "recipient_missing", "store_write", "unexpected"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _read_clock(clock: Clock) -> datetime:
    """Read ``clock``, falling back to the system clock if it raises."""
    try:
        return _coerce_utc(clock())
    except Exception:
        logger.exception("delivery clock failed; using system time")
        return _now_utc()


def _describe_exception(exc: BaseException) -> str:
    message = str(exc).strip()
    name = exc.__class__.__name__
    return f"{name}: {message}" if message else name


@dataclass(frozen=True)
class DueWindow:
    start: datetime
    end: datetime


def due_window(now: datetime, tz: tzinfo = timezone.utc) -> DueWindow:
    """Return the calendar day containing ``now`` in ``tz`` as UTC bounds."""
    local_now = _coerce_utc(now).astimezone(tz)
    local_start = datetime.combine(local_now.date(), time.min, tzinfo=tz)
    local_end = datetime.combine(local_now.date() + timedelta(days=1), time.min, tzinfo=tz)
    return DueWindow(start=local_start.astimezone(timezone.utc), end=local_end.astimezone(timezone.utc))


@dataclass(frozen=True)
class DueScan:
    window: DueWindow
    letters: list[DueLetter]

    @property
    def carried_over_count(self) -> int:
        return sum(1 for value in self.letters if value.item.due_at < self.window.start)


class DueLetterScanner:
    def __init__(self, *, repository: LetterRepository, tz: tzinfo = timezone.utc) -> None:
        self._repository = repository
        self._tz = tz

    def scan(self, now: datetime) -> DueScan:
        window = due_window(now, self._tz)
        letters = self._repository.find_due_undelivered(window.start, window.end)
        return DueScan(window=window, letters=list(letters))


@dataclass(frozen=True)
class AttemptOutcome:
    letter_id: str
    status: AttemptStatus
    attempted_at: datetime
    failure_kind: FailureKind | None = None
    error: str | None = None
    provider_message_id: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "letter_id": self.letter_id,
            "status": self.status,
            "attempted_at": self.attempted_at.isoformat(),
            "failure_kind": self.failure_kind,
            "error": self.error,
            "provider_message_id": self.provider_message_id,
        }


class DeliveryAttemptEngine:
    """Makes one delivery attempt for one due letter and persists the result."""

    def __init__(self, *, repository: LetterRepository, notifier: LetterNotifier, clock: Clock = _now_utc) -> None:
        self._repository = repository
        self._notifier = notifier
        self._clock = clock

    def attempt(self, due: DueLetter) -> AttemptOutcome:
        item = due.item
        result, failure_kind = self._call_notifier(due)
        now = _coerce_utc(self._clock())

        if result.success:
            patch = DeliveryPatch.sent(now, provider_message_id=result.message_id)
        else:
            detail = result.error_detail or "Unknown error"
            patch = DeliveryPatch.failed(detail)
            logger.warning(
                "letter %s delivery failed for %s: %s",
                item.letter_id,
                mask_email(due.recipient.email) if due.recipient is not None else f"user {item.user_id}",
                detail,
            )

        try:
            self._repository.update_delivery_state(item.letter_id, patch)
        except Exception as exc:
            logger.exception("letter %s delivery state write failed", item.letter_id)
            return AttemptOutcome(
                letter_id=item.letter_id,
                status="failed",
                attempted_at=now,
                failure_kind="store_write",
                error=_describe_exception(exc),
                provider_message_id=result.message_id,
            )

        if result.success:
            logger.info("letter %s delivered (message_id=%s)", item.letter_id, result.message_id)
            return AttemptOutcome(
                letter_id=item.letter_id,
                status="sent",
                attempted_at=now,
                provider_message_id=result.message_id,
            )
        return AttemptOutcome(
            letter_id=item.letter_id,
            status="failed",
            attempted_at=now,
            failure_kind=failure_kind,
            error=patch.last_error,
        )

    def record_unexpected_failure(self, due: DueLetter, exc: Exception) -> AttemptOutcome:
        """Fold an error raised outside the normal attempt path into a failure."""
        now = _read_clock(self._clock)
        detail = _describe_exception(exc)
        try:
            self._repository.update_delivery_state(due.item.letter_id, DeliveryPatch.failed(detail))
        except Exception:
            logger.exception("letter %s failure could not be recorded", due.item.letter_id)
        return AttemptOutcome(
            letter_id=due.item.letter_id,
            status="failed",
            attempted_at=now,
            failure_kind="unexpected",
            error=detail,
        )

    def _call_notifier(self, due: DueLetter) -> tuple[NotifierResult, FailureKind | None]:
        item = due.item
        if due.recipient is None:
            detail = f"Recipient not found for user {item.user_id}"
            return NotifierResult(success=False, error_detail=detail), "recipient_missing"
        letter = LetterContent(
            title=item.title,
            content=item.content,
            created_at=item.created_at,
            due_at=item.due_at,
        )
        try:
            result = self._notifier.send(due.recipient.email, due.recipient.name, letter)
        except Exception as exc:
            logger.exception("notifier raised while delivering letter %s", item.letter_id)
            return NotifierResult(success=False, error_detail=_describe_exception(exc)), "notifier_exception"
        if result.success:
            return result, None
        return result, "notifier"


@dataclass
class BatchRunSummary:
    run_id: str
    trigger: RunTrigger
    started_at: datetime
    status: Literal["completed", "aborted"] = "completed"
    finished_at: datetime | None = None
    window: DueWindow | None = None
    carried_over_count: int = 0
    error: str | None = None
    outcomes: list[AttemptOutcome] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.outcomes)

    @property
    def sent_count(self) -> int:
        return sum(1 for value in self.outcomes if value.status == "sent")

    @property
    def failed_count(self) -> int:
        return sum(1 for value in self.outcomes if value.status == "failed")

    @property
    def notifier_failed_count(self) -> int:
        return sum(1 for value in self.outcomes if value.failure_kind in {"notifier", "notifier_exception"})

    @property
    def store_failed_count(self) -> int:
        return sum(1 for value in self.outcomes if value.failure_kind == "store_write")

    def counts(self) -> dict[str, int]:
        return {
            "processed_count": self.processed_count,
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
        }

    def to_record(self) -> DeliveryRunRecord:
        return DeliveryRunRecord(
            run_id=self.run_id,
            trigger=self.trigger,
            status=self.status,
            window_start=self.window.start if self.window else None,
            window_end=self.window.end if self.window else None,
            started_at=self.started_at,
            finished_at=self.finished_at or self.started_at,
            processed_count=self.processed_count,
            sent_count=self.sent_count,
            failed_count=self.failed_count,
            notifier_failed_count=self.notifier_failed_count,
            store_failed_count=self.store_failed_count,
            carried_over_count=self.carried_over_count,
            error=self.error,
            outcomes_json=json.dumps(
                [value.as_dict() for value in self.outcomes],
                sort_keys=True,
                separators=(",", ":"),
            ),
        )


class DeliveryBatchRunner:
    """Runs delivery batches one at a time.

    ``run_batch`` holds a process-wide lock for the whole scan-then-deliver
    pass, so a trigger that fires mid-run waits and then rescans. A run that
    fails to scan is reported as ``aborted``; it never leaves the runner
    stuck in ``running``.
    """

    def __init__(
        self,
        *,
        repository: LetterRepository,
        notifier: LetterNotifier,
        run_repository: DeliveryRunRepository | None = None,
        tz: tzinfo = timezone.utc,
        clock: Clock = _now_utc,
    ) -> None:
        self._scanner = DueLetterScanner(repository=repository, tz=tz)
        self._engine = DeliveryAttemptEngine(repository=repository, notifier=notifier, clock=clock)
        self._run_repository = run_repository
        self._clock = clock
        self._lock = Lock()
        self._state: RunnerState = "idle"

    @property
    def state(self) -> RunnerState:
        return self._state

    def run_batch_now(self) -> BatchRunSummary:
        return self.run_batch(trigger="manual")

    def run_batch(self, trigger: RunTrigger = "schedule") -> BatchRunSummary:
        with self._lock:
            self._state = "running"
            try:
                summary = self._run_locked(trigger)
            finally:
                self._state = "idle"
        self._record(summary)
        return summary

    def _run_locked(self, trigger: RunTrigger) -> BatchRunSummary:
        run_id = f"drun_{secrets.token_hex(8)}"
        try:
            started_at = _coerce_utc(self._clock())
        except Exception as exc:
            logger.exception("delivery run %s aborted: clock unavailable", run_id)
            return self._abort(BatchRunSummary(run_id=run_id, trigger=trigger, started_at=_now_utc()), exc)

        summary = BatchRunSummary(run_id=run_id, trigger=trigger, started_at=started_at)
        logger.info("delivery run %s started (trigger=%s)", summary.run_id, trigger)

        try:
            scan = self._scanner.scan(summary.started_at)
        except Exception as exc:
            logger.exception("delivery run %s aborted: scan failed", summary.run_id)
            return self._abort(summary, exc)

        try:
            summary.window = scan.window
            summary.carried_over_count = scan.carried_over_count
            logger.info(
                "delivery run %s found %d letter(s) due before %s (%d carried over)",
                summary.run_id,
                len(scan.letters),
                scan.window.end.isoformat(),
                summary.carried_over_count,
            )

            for due in scan.letters:
                try:
                    outcome = self._engine.attempt(due)
                except Exception as exc:
                    logger.exception("unexpected error delivering letter %s", due.item.letter_id)
                    outcome = self._engine.record_unexpected_failure(due, exc)
                summary.outcomes.append(outcome)
        except Exception as exc:
            logger.exception("delivery run %s aborted after %d letter(s)", summary.run_id, summary.processed_count)
            return self._abort(summary, exc)

        summary.finished_at = _read_clock(self._clock)
        logger.info(
            "delivery run %s complete: %d processed, %d sent, %d failed (%d notifier, %d store)",
            summary.run_id,
            summary.processed_count,
            summary.sent_count,
            summary.failed_count,
            summary.notifier_failed_count,
            summary.store_failed_count,
        )
        return summary

    def _abort(self, summary: BatchRunSummary, exc: Exception) -> BatchRunSummary:
        summary.status = "aborted"
        summary.error = _describe_exception(exc)
        summary.finished_at = _read_clock(self._clock)
        return summary

    def _record(self, summary: BatchRunSummary) -> None:
        if self._run_repository is None:
            return
        try:
            self._run_repository.record_run(summary.to_record())
        except Exception:
            logger.exception("delivery run %s could not be recorded", summary.run_id)
