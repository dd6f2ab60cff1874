from __future__ import annotations

import html
import json
import secrets
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

LETTER_SUBJECT_SUFFIX = "Letter from your past self"


@dataclass(frozen=True)
class LetterContent:
    title: str | None
    content: str
    created_at: datetime
    due_at: datetime


@dataclass(frozen=True)
class NotifierResult:
    success: bool
    message_id: str | None = None
    error_detail: str | None = None


class LetterNotifier(Protocol):
    def send(self, recipient_email: str, recipient_name: str, letter: LetterContent) -> NotifierResult: ...


def _format_long_date(value: datetime) -> str:
    return f"{value.strftime('%B')} {value.day}, {value.year}"


def render_letter_subject(letter: LetterContent) -> str:
    title = (letter.title or "").strip()
    if title:
        return f"{title} - {LETTER_SUBJECT_SUFFIX}"
    return LETTER_SUBJECT_SUFFIX


def render_letter_text(recipient_name: str, letter: LetterContent) -> str:
    greeting_name = recipient_name.strip() or "there"
    title = (letter.title or "").strip()
    lines = [
        "You have a letter from your past self!",
        "",
        f"Hello {greeting_name},",
        "",
        f"You wrote this letter to yourself on {_format_long_date(letter.created_at)}.",
        "",
        f"It was scheduled for delivery on {_format_long_date(letter.due_at)}.",
        "",
    ]
    if title:
        lines.extend([title, ""])
    lines.extend([letter.content, "", "Thank you for using Future Self Letters!"])
    return "\n".join(lines)


def render_letter_html(recipient_name: str, letter: LetterContent) -> str:
    greeting_name = html.escape(recipient_name.strip() or "there")
    title = (letter.title or "").strip()
    title_block = f"<h2>{html.escape(title)}</h2>" if title else ""
    return (
        "<html><body>"
        "<h1>You have a letter from your past self!</h1>"
        f"<p>Hello {greeting_name},</p>"
        f"<p>You wrote this letter to yourself on {_format_long_date(letter.created_at)}.</p>"
        f"<p>It was scheduled for delivery on {_format_long_date(letter.due_at)}.</p>"
        "<hr>"
        f"<section>{title_block}"
        f'<p style="white-space: pre-wrap">{html.escape(letter.content)}</p></section>'
        "<hr>"
        "<p>Thank you for using Future Self Letters!</p>"
        "</body></html>"
    )


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" not in normalized:
        return "*" * len(normalized) if len(normalized) <= 4 else f"{normalized[:2]}***{normalized[-2:]}"
    local, domain = normalized.split("@", 1)
    if len(local) <= 1:
        return f"*@{domain}"
    return f"{local[0]}***@{domain}"


class StubLetterNotifier:
    """In-process notifier for local runs and tests.

    Delivery fails when the notifier is disabled or when the recipient
    address contains ``fail``; every other call succeeds with a synthetic
    message id.
    """

    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled

    def send(self, recipient_email: str, recipient_name: str, letter: LetterContent) -> NotifierResult:
        _ = recipient_name
        if not self._enabled:
            return NotifierResult(success=False, error_detail="Letter delivery is disabled (NOTIFIER_ENABLED=false)")
        if not recipient_email.strip():
            return NotifierResult(success=False, error_detail="Recipient email is missing")
        if "fail" in recipient_email.lower():
            return NotifierResult(success=False, error_detail="Stub notifier forced failure for recipient")
        _ = letter
        sent_at = datetime.now(timezone.utc)
        return NotifierResult(success=True, message_id=f"stub-{int(sent_at.timestamp())}-{secrets.token_hex(4)}")


class _NotifierSendError(Exception):
    """Internal error raised when an email API request fails."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class HttpLetterNotifier:
    """Email notifier that posts rendered letters to a Resend-compatible API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_email: str,
        from_name: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        if not from_email.strip():
            raise ValueError("from_email must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._from_email = from_email.strip()
        self._from_name = from_name.strip()
        self._timeout_seconds = timeout_seconds

    def send(self, recipient_email: str, recipient_name: str, letter: LetterContent) -> NotifierResult:
        if not recipient_email.strip():
            return NotifierResult(success=False, error_detail="Recipient email is missing")

        sender = f"{self._from_name} <{self._from_email}>" if self._from_name else self._from_email
        request_payload = {
            "from": sender,
            "to": recipient_email.strip(),
            "reply_to": self._from_email,
            "subject": render_letter_subject(letter),
            "html": render_letter_html(recipient_name, letter),
            "text": render_letter_text(recipient_name, letter),
        }

        try:
            response_data = self._post(request_payload)
        except _NotifierSendError as exc:
            return NotifierResult(
                success=False,
                error_detail=f"{exc.message} (recipient: {mask_email(recipient_email)})",
            )
        message_id = response_data.get("id")
        return NotifierResult(success=True, message_id=message_id if isinstance(message_id, str) else None)

    def _post(self, body: dict[str, str]) -> dict[str, object]:
        """Send a POST request to the email API."""
        url = f"{self._base_url}/emails"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _NotifierSendError(f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise _NotifierSendError(f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _NotifierSendError(f"Request timed out: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise _NotifierSendError(f"Invalid response body: {exc}") from exc
