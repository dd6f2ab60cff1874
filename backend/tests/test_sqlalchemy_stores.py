from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import delete

from letters_web.delivery import BatchRunSummary, DeliveryBatchRunner
from letters_web.delivery_runs import SqlAlchemyDeliveryRunRepository
from letters_web.letters import (
    DeliveryPatch,
    InMemoryLetterRepository,
    LetterAlreadyDeliveredError,
    LetterNotFoundError,
    RecipientNotFoundError,
    SqlAlchemyLetterRepository,
    _LetterUserRow,
)
from letters_web.notifier import LetterContent, NotifierResult

NOW = datetime(2026, 10, 19, 9, 15, tzinfo=timezone.utc)
TODAY = datetime(2026, 10, 19, tzinfo=timezone.utc)
TOMORROW = TODAY + timedelta(days=1)
WRITTEN_AT = datetime(2024, 10, 19, tzinfo=timezone.utc)


def _letter_repo(tmp_path: Path) -> SqlAlchemyLetterRepository:
    repo = SqlAlchemyLetterRepository(f"sqlite:///{tmp_path / 'letters.db'}")
    repo.add_recipient(user_id="user-001", email="future.me@example.com", name="Avery")
    return repo


def _add(repo: SqlAlchemyLetterRepository, letter_id: str, due_at: datetime, state: str = "pending") -> None:
    repo.add_letter(
        letter_id=letter_id,
        user_id="user-001",
        title=f"Title {letter_id}",
        content=f"Body {letter_id}",
        created_at=WRITTEN_AT,
        due_at=due_at,
        delivery_state=state,  # type: ignore[arg-type]
    )


def test_find_due_undelivered_applies_upper_bound_and_state_filter(tmp_path: Path) -> None:
    repo = _letter_repo(tmp_path)
    _add(repo, "overdue-failed", TODAY - timedelta(days=1), state="failed")
    _add(repo, "due-today", TODAY + timedelta(hours=10))
    _add(repo, "unscheduled", TODAY + timedelta(hours=1), state="unscheduled")
    _add(repo, "tomorrow", TOMORROW)
    _add(repo, "sent-today", TODAY + timedelta(hours=2))
    repo.update_delivery_state("sent-today", DeliveryPatch.sent(NOW))

    due = repo.find_due_undelivered(TODAY, TOMORROW)

    assert [value.item.letter_id for value in due] == ["overdue-failed", "unscheduled", "due-today"]
    assert due[0].recipient.email == "future.me@example.com"
    assert due[0].recipient.name == "Avery"
    assert due[0].item.due_at.tzinfo == timezone.utc


def test_failed_patch_increments_retry_count_atomically(tmp_path: Path) -> None:
    repo = _letter_repo(tmp_path)
    _add(repo, "letter-a", TODAY)

    repo.update_delivery_state("letter-a", DeliveryPatch.failed("timeout"))
    updated = repo.update_delivery_state("letter-a", DeliveryPatch.failed("bounced"))

    assert updated.delivery_state == "failed"
    assert updated.retry_count == 2
    assert updated.last_error == "bounced"
    assert updated.is_delivered is False


def test_sent_patch_resets_retry_state_and_locks_row(tmp_path: Path) -> None:
    repo = _letter_repo(tmp_path)
    _add(repo, "letter-a", TODAY)
    repo.update_delivery_state("letter-a", DeliveryPatch.failed("timeout"))

    updated = repo.update_delivery_state("letter-a", DeliveryPatch.sent(NOW, provider_message_id="msg-9"))

    assert updated.is_delivered is True
    assert updated.delivery_state == "sent"
    assert updated.retry_count == 0
    assert updated.last_error is None
    assert updated.delivered_at == NOW
    assert updated.sent_at == NOW
    assert updated.provider_message_id == "msg-9"

    with pytest.raises(LetterAlreadyDeliveredError):
        repo.update_delivery_state("letter-a", DeliveryPatch.failed("late"))


def test_missing_records_raise_domain_errors(tmp_path: Path) -> None:
    repo = _letter_repo(tmp_path)

    with pytest.raises(LetterNotFoundError):
        repo.update_delivery_state("missing", DeliveryPatch.failed("x"))
    with pytest.raises(LetterNotFoundError):
        repo.get_letter("missing")
    with pytest.raises(RecipientNotFoundError):
        repo.add_letter(user_id="nobody", content="hi", created_at=WRITTEN_AT, due_at=TODAY)


def test_add_letter_requires_future_due_date(tmp_path: Path) -> None:
    repo = _letter_repo(tmp_path)

    with pytest.raises(ValueError):
        repo.add_letter(user_id="user-001", content="too late", created_at=NOW, due_at=NOW)


def test_batch_run_against_sqlite_store_and_run_history(tmp_path: Path) -> None:
    repo = _letter_repo(tmp_path)
    runs = SqlAlchemyDeliveryRunRepository(f"sqlite:///{tmp_path / 'runs.db'}")
    _add(repo, "letter-ok", TODAY)
    _add(repo, "letter-bad", TODAY + timedelta(hours=1))

    class SelectiveNotifier:
        def send(self, recipient_email: str, recipient_name: str, letter: LetterContent) -> NotifierResult:
            if letter.title == "Title letter-bad":
                return NotifierResult(success=False, error_detail="timeout")
            return NotifierResult(success=True, message_id="msg-ok")

    runner = DeliveryBatchRunner(repository=repo, notifier=SelectiveNotifier(), run_repository=runs, clock=lambda: NOW)

    summary: BatchRunSummary = runner.run_batch_now()
    runner.run_batch_now()

    assert summary.counts() == {"processed_count": 2, "sent_count": 1, "failed_count": 1}
    assert repo.get_letter("letter-ok").is_delivered is True
    bad = repo.get_letter("letter-bad")
    assert bad.retry_count == 2
    assert bad.last_error == "timeout"

    history = runs.list_runs(limit=10)
    assert len(history) == 2
    recorded = runs.get_run(summary.run_id)
    assert recorded is not None
    assert recorded.sent_count == 1
    assert recorded.window_end == TOMORROW
    assert {value["letter_id"] for value in recorded.outcomes()} == {"letter-ok", "letter-bad"}


def test_reset_clears_tables(tmp_path: Path) -> None:
    repo = _letter_repo(tmp_path)
    _add(repo, "letter-a", TODAY)

    repo.reset()

    assert repo.find_due_undelivered(TODAY, TOMORROW) == []


def test_unknown_state_is_scanned_like_unscheduled_in_both_stores(tmp_path: Path) -> None:
    sql_repo = _letter_repo(tmp_path)
    memory_repo = InMemoryLetterRepository()
    memory_repo.add_recipient(user_id="user-001", email="future.me@example.com", name="Avery")
    for repo in (sql_repo, memory_repo):
        _add(repo, "letter-legacy", TODAY, state="queued")  # type: ignore[arg-type]
        _add(repo, "letter-sent", TODAY + timedelta(hours=1))
        repo.update_delivery_state("letter-sent", DeliveryPatch.sent(NOW))

    sql_due = sql_repo.find_due_undelivered(TODAY, TOMORROW)
    memory_due = memory_repo.find_due_undelivered(TODAY, TOMORROW)

    assert [value.item.letter_id for value in sql_due] == ["letter-legacy"]
    assert [value.item.letter_id for value in memory_due] == ["letter-legacy"]
    assert sql_due[0].item.delivery_state == "unscheduled"


def test_letter_with_deleted_owner_is_returned_without_recipient(tmp_path: Path) -> None:
    repo = _letter_repo(tmp_path)
    repo.add_recipient(user_id="user-gone", email="gone@example.com")
    _add(repo, "letter-ok", TODAY)
    repo.add_letter(
        letter_id="letter-orphan",
        user_id="user-gone",
        content="Still here?",
        created_at=WRITTEN_AT,
        due_at=TODAY + timedelta(hours=1),
    )
    with repo._session() as session:
        with session.begin():
            session.execute(delete(_LetterUserRow).where(_LetterUserRow.user_id == "user-gone"))

    due = repo.find_due_undelivered(TODAY, TOMORROW)

    assert [(value.item.letter_id, value.recipient is None) for value in due] == [
        ("letter-ok", False),
        ("letter-orphan", True),
    ]

    class AcceptingNotifier:
        def send(self, recipient_email: str, recipient_name: str, letter: LetterContent) -> NotifierResult:
            return NotifierResult(success=True, message_id="msg-ok")

    summary = DeliveryBatchRunner(repository=repo, notifier=AcceptingNotifier(), clock=lambda: NOW).run_batch_now()

    assert summary.counts() == {"processed_count": 2, "sent_count": 1, "failed_count": 1}
    assert repo.get_letter("letter-ok").is_delivered is True
    assert repo.get_letter("letter-orphan").retry_count == 1
