from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from letters_web import api as api_module
from letters_web.config import Settings
from letters_web.delivery import DeliveryBatchRunner
from letters_web.delivery_runs import InMemoryDeliveryRunRepository
from letters_web.letters import InMemoryLetterRepository
from letters_web.main import create_app
from letters_web.notifier import StubLetterNotifier
from letters_web.scheduler import DailyDeliverySchedule


def _client(monkeypatch: pytest.MonkeyPatch, *, notifier_enabled: bool = True) -> TestClient:
    letter_repo = InMemoryLetterRepository()
    run_repo = InMemoryDeliveryRunRepository()
    notifier = StubLetterNotifier(enabled=notifier_enabled)
    runner = DeliveryBatchRunner(repository=letter_repo, notifier=notifier, run_repository=run_repo)
    monkeypatch.setattr(api_module, "letter_repo", letter_repo)
    monkeypatch.setattr(api_module, "run_repo", run_repo)
    monkeypatch.setattr(api_module, "notifier", notifier)
    monkeypatch.setattr(api_module, "delivery_runner", runner)
    monkeypatch.setattr(api_module, "daily_schedule", DailyDeliverySchedule(runner))
    return TestClient(create_app())


def _seed_due_letters() -> None:
    repo = api_module.letter_repo
    assert isinstance(repo, InMemoryLetterRepository)
    now = datetime.now(timezone.utc)
    repo.add_recipient(user_id="user-ok", email="future.me@example.com", name="Avery")
    repo.add_recipient(user_id="user-bounce", email="please-fail@example.com", name="Blake")
    repo.add_letter(
        letter_id="letter-ok",
        user_id="user-ok",
        title="One year on",
        content="Hope the garden made it.",
        created_at=now - timedelta(days=365),
        due_at=now - timedelta(minutes=5),
    )
    repo.add_letter(
        letter_id="letter-bounce",
        user_id="user-bounce",
        content="Call your sister.",
        created_at=now - timedelta(days=30),
        due_at=now - timedelta(minutes=1),
    )


def _use_settings(monkeypatch: pytest.MonkeyPatch, **overrides: object) -> Settings:
    settings = replace(api_module._settings, **overrides)
    monkeypatch.setattr(api_module, "_settings", settings)
    return settings


def test_health(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_run_once_delivers_due_letters_and_records_history(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    _seed_due_letters()

    response = client.post("/api/v1/delivery/run/once")

    assert response.status_code == 200
    body = response.json()
    assert body["trigger"] == "manual"
    assert body["status"] == "completed"
    assert body["processed_count"] == 2
    assert body["sent_count"] == 1
    assert body["failed_count"] == 1
    assert body["notifier_failed_count"] == 1
    results = {value["letter_id"]: value for value in body["results"]}
    assert results["letter-ok"]["status"] == "sent"
    assert results["letter-ok"]["provider_message_id"].startswith("stub-")
    assert results["letter-bounce"]["status"] == "failed"
    assert results["letter-bounce"]["failure_kind"] == "notifier"

    assert api_module.letter_repo.get_letter("letter-ok").is_delivered is True
    assert api_module.letter_repo.get_letter("letter-bounce").retry_count == 1

    latest = client.get("/api/v1/delivery/runs/latest")
    assert latest.status_code == 200
    assert latest.json()["run_id"] == body["run_id"]

    by_id = client.get(f"/api/v1/delivery/runs/{body['run_id']}")
    assert by_id.status_code == 200
    assert by_id.json()["sent_count"] == 1


def test_second_run_only_retries_failed_letters(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    _seed_due_letters()

    client.post("/api/v1/delivery/run/once")
    second = client.post("/api/v1/delivery/run/once").json()

    assert second["processed_count"] == 1
    assert [value["letter_id"] for value in second["results"]] == ["letter-bounce"]
    assert api_module.letter_repo.get_letter("letter-bounce").retry_count == 2

    listing = client.get("/api/v1/delivery/runs", params={"limit": 10})
    assert listing.status_code == 200
    assert len(listing.json()["items"]) == 2


def test_run_history_lookups_return_404_when_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)

    assert client.get("/api/v1/delivery/runs/latest").status_code == 404
    assert client.get("/api/v1/delivery/runs/drun_missing").status_code == 404
    assert client.get("/api/v1/delivery/runs", params={"limit": 0}).status_code == 422


def test_schedule_endpoint_reports_trigger_and_runner_state(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)

    response = client.get("/api/v1/delivery/schedule")

    assert response.status_code == 200
    body = response.json()
    assert body["running"] is False
    assert body["next_run_at"] is None
    assert body["runner_state"] == "idle"
    assert body["cron"] == "0 0 * * *"


def test_scheduled_runs_share_the_runner_behind_the_api(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    _seed_due_letters()

    api_module.daily_schedule._fire()

    latest = client.get("/api/v1/delivery/runs/latest").json()
    assert latest["trigger"] == "schedule"
    assert latest["sent_count"] == 1
    manual = client.post("/api/v1/delivery/run/once").json()
    assert [value["letter_id"] for value in manual["results"]] == ["letter-bounce"]


def test_email_config_reports_missing_values(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    _use_settings(
        monkeypatch,
        notifier_sender_type="http",
        notifier_api_key="re_your_api_key_here",
        email_from="",
        email_from_name="Future Self Letters",
    )

    response = client.get("/api/v1/admin/email-config")

    assert response.status_code == 200
    body = response.json()
    assert body["configured"] is False
    assert body["config"]["has_api_key"] is False
    assert body["config"]["has_from_email"] is False
    assert body["config"]["has_from_name"] is True
    assert body["config"]["from_email"] == "Not set"
    assert len(body["issues"]) == 2


def test_email_config_reports_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    _use_settings(
        monkeypatch,
        notifier_sender_type="http",
        notifier_api_key="re_live_key_123",
        email_from="letters@example.com",
        email_from_name="Future Self Letters",
    )

    body = client.get("/api/v1/admin/email-config").json()

    assert body["configured"] is True
    assert body["issues"] == []
    assert body["config"]["from_email"] == "letters@example.com"
    assert "re_live_key_123" not in str(body)


def test_test_email_sends_through_notifier(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    _use_settings(monkeypatch, environment="development")

    response = client.post("/api/v1/admin/test-email", json={"email": " future.me@example.com "})

    assert response.status_code == 200
    assert response.json()["sent"] is True
    assert response.json()["message_id"].startswith("stub-")


def test_test_email_validates_address(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    _use_settings(monkeypatch, environment="development")

    missing = client.post("/api/v1/admin/test-email", json={})
    blank = client.post("/api/v1/admin/test-email", json={"email": "   "})
    invalid = client.post("/api/v1/admin/test-email", json={"email": "not-an-address"})

    assert missing.status_code == 400
    assert blank.status_code == 400
    assert invalid.status_code == 400
    assert invalid.json()["detail"] == "invalid email address format"


def test_test_email_reports_notifier_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch, notifier_enabled=False)
    _use_settings(monkeypatch, environment="development")

    response = client.post("/api/v1/admin/test-email", json={"email": "future.me@example.com"})

    assert response.status_code == 502
    assert "NOTIFIER_ENABLED" in response.json()["detail"]


def test_test_email_is_blocked_in_production(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    _use_settings(monkeypatch, environment="production")

    response = client.post("/api/v1/admin/test-email", json={"email": "future.me@example.com"})

    assert response.status_code == 403
