from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Literal, Protocol

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, create_engine, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

DeliveryState = Literal["unscheduled", "pending", "sent", "failed"]

DELIVERY_STATES: frozenset[str] = frozenset({"unscheduled", "pending", "sent", "failed"})
RETRY_ELIGIBLE_STATES: frozenset[str] = frozenset({"unscheduled", "pending", "failed"})


class LetterNotFoundError(KeyError):
    """Raised when an operation references a letter id that does not exist."""


class RecipientNotFoundError(KeyError):
    """Raised when a letter references a user id that does not exist."""


class LetterAlreadyDeliveredError(RuntimeError):
    """Raised when a delivery-state write targets a letter that is already sent."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def _normalize_state(value: str | None) -> DeliveryState:
    if value is None or value not in DELIVERY_STATES:
        return "unscheduled"
    return value  # type: ignore[return-value]


@dataclass(frozen=True)
class Recipient:
    user_id: str
    email: str
    name: str


@dataclass(frozen=True)
class DeliverableItem:
    letter_id: str
    user_id: str
    title: str | None
    content: str
    created_at: datetime
    due_at: datetime
    delivery_state: DeliveryState = "pending"
    is_delivered: bool = False
    delivered_at: datetime | None = None
    sent_at: datetime | None = None
    retry_count: int = 0
    last_error: str | None = None
    provider_message_id: str | None = None


@dataclass(frozen=True)
class DueLetter:
    """A due item paired with its owner.

    ``recipient`` is None when the owning user row no longer exists; the
    letter is still returned so the attempt can record it as failed.
    """

    item: DeliverableItem
    recipient: Recipient | None


@dataclass(frozen=True)
class DeliveryPatch:
    """A single delivery-state write.

    Build it with :meth:`sent` or :meth:`failed`; both keep ``is_delivered``
    in step with ``delivery_state``. ``increment_retry`` asks the store to add
    one to the stored counter atomically instead of writing a value read
    earlier.
    """

    delivery_state: DeliveryState
    is_delivered: bool
    delivered_at: datetime | None
    sent_at: datetime | None
    retry_count: int | None
    increment_retry: bool
    last_error: str | None
    provider_message_id: str | None = None

    @classmethod
    def sent(cls, now: datetime, *, provider_message_id: str | None = None) -> DeliveryPatch:
        delivered_at = _coerce_utc(now)
        return cls(
            delivery_state="sent",
            is_delivered=True,
            delivered_at=delivered_at,
            sent_at=delivered_at,
            retry_count=0,
            increment_retry=False,
            last_error=None,
            provider_message_id=provider_message_id,
        )

    @classmethod
    def failed(cls, error_detail: str) -> DeliveryPatch:
        return cls(
            delivery_state="failed",
            is_delivered=False,
            delivered_at=None,
            sent_at=None,
            retry_count=None,
            increment_retry=True,
            last_error=error_detail,
        )


class LetterRepository(Protocol):
    def reset(self) -> None: ...

    def find_due_undelivered(self, window_start: datetime, window_end: datetime) -> list[DueLetter]: ...

    def update_delivery_state(self, letter_id: str, patch: DeliveryPatch) -> DeliverableItem: ...

    def get_letter(self, letter_id: str) -> DeliverableItem: ...


class InMemoryLetterRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._ids = count(1)
        self._recipients: dict[str, Recipient] = {}
        self._letters: dict[str, DeliverableItem] = {}

    def reset(self) -> None:
        with self._lock:
            self._ids = count(1)
            self._recipients.clear()
            self._letters.clear()

    def add_recipient(self, *, user_id: str, email: str, name: str = "") -> Recipient:
        recipient = Recipient(user_id=user_id, email=email.strip(), name=name.strip())
        with self._lock:
            self._recipients[user_id] = recipient
        return recipient

    def add_letter(
        self,
        *,
        user_id: str,
        content: str,
        due_at: datetime,
        title: str | None = None,
        created_at: datetime | None = None,
        delivery_state: DeliveryState = "pending",
        letter_id: str | None = None,
    ) -> DeliverableItem:
        created = _coerce_utc(created_at or _now_utc())
        due = _coerce_utc(due_at)
        if due <= created:
            raise ValueError("due_at must be after created_at")
        if not content.strip():
            raise ValueError("content must not be empty")
        with self._lock:
            if user_id not in self._recipients:
                raise RecipientNotFoundError(user_id)
            resolved_id = letter_id or f"letter-{next(self._ids):04d}"
            item = DeliverableItem(
                letter_id=resolved_id,
                user_id=user_id,
                title=title,
                content=content,
                created_at=created,
                due_at=due,
                delivery_state=delivery_state,
                is_delivered=delivery_state == "sent",
            )
            self._letters[resolved_id] = item
        return item

    def put_letter(self, item: DeliverableItem) -> None:
        """Store ``item`` as-is. Used to seed fixtures in arbitrary states."""
        with self._lock:
            self._letters[item.letter_id] = item

    def find_due_undelivered(self, window_start: datetime, window_end: datetime) -> list[DueLetter]:
        _ = window_start
        cutoff = _coerce_utc(window_end)
        with self._lock:
            candidates = [
                item
                for item in self._letters.values()
                if item.due_at < cutoff
                and not item.is_delivered
                and _normalize_state(item.delivery_state) in RETRY_ELIGIBLE_STATES
            ]
            candidates.sort(key=lambda value: (value.due_at, value.letter_id))
            return [DueLetter(item=item, recipient=self._recipients.get(item.user_id)) for item in candidates]

    def update_delivery_state(self, letter_id: str, patch: DeliveryPatch) -> DeliverableItem:
        with self._lock:
            row = self._letters.get(letter_id)
            if row is None:
                raise LetterNotFoundError(letter_id)
            if row.delivery_state == "sent":
                raise LetterAlreadyDeliveredError(f"letter already delivered: {letter_id}")
            retry_count = patch.retry_count if patch.retry_count is not None else row.retry_count
            if patch.increment_retry:
                retry_count = row.retry_count + 1
            updated = replace(
                row,
                delivery_state=patch.delivery_state,
                is_delivered=patch.is_delivered,
                delivered_at=patch.delivered_at if patch.is_delivered else row.delivered_at,
                sent_at=patch.sent_at if patch.sent_at is not None else row.sent_at,
                retry_count=retry_count,
                last_error=patch.last_error,
                provider_message_id=(
                    patch.provider_message_id if patch.is_delivered else row.provider_message_id
                ),
            )
            self._letters[letter_id] = updated
        return updated

    def get_letter(self, letter_id: str) -> DeliverableItem:
        with self._lock:
            row = self._letters.get(letter_id)
        if row is None:
            raise LetterNotFoundError(letter_id)
        return row


class LettersBase(DeclarativeBase):
    pass


class _LetterUserRow(LettersBase):
    __tablename__ = "letter_users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _LetterRow(LettersBase):
    __tablename__ = "letters"

    letter_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("letter_users.user_id"), nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String(256), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    delivery_state: Mapped[str | None] = mapped_column(String(16), nullable=True, default="pending")
    is_delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)


def _item_from_row(row: _LetterRow) -> DeliverableItem:
    return DeliverableItem(
        letter_id=row.letter_id,
        user_id=row.user_id,
        title=row.title,
        content=row.content,
        created_at=_coerce_utc(row.created_at),
        due_at=_coerce_utc(row.due_at),
        delivery_state=_normalize_state(row.delivery_state),
        is_delivered=row.is_delivered,
        delivered_at=_coerce_optional_utc(row.delivered_at),
        sent_at=_coerce_optional_utc(row.sent_at),
        retry_count=row.retry_count,
        last_error=row.last_error,
        provider_message_id=row.provider_message_id,
    )


class SqlAlchemyLetterRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for LETTER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            LettersBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_LetterRow).delete()
                session.query(_LetterUserRow).delete()

    def add_recipient(self, *, user_id: str, email: str, name: str = "") -> Recipient:
        with self._session() as session:
            with session.begin():
                existing = session.get(_LetterUserRow, user_id)
                if existing is None:
                    session.add(
                        _LetterUserRow(
                            user_id=user_id,
                            email=email.strip(),
                            name=name.strip(),
                            created_at=_now_utc(),
                        )
                    )
                else:
                    existing.email = email.strip()
                    existing.name = name.strip()
        return Recipient(user_id=user_id, email=email.strip(), name=name.strip())

    def add_letter(
        self,
        *,
        user_id: str,
        content: str,
        due_at: datetime,
        title: str | None = None,
        created_at: datetime | None = None,
        delivery_state: DeliveryState = "pending",
        letter_id: str | None = None,
    ) -> DeliverableItem:
        created = _coerce_utc(created_at or _now_utc())
        due = _coerce_utc(due_at)
        if due <= created:
            raise ValueError("due_at must be after created_at")
        if not content.strip():
            raise ValueError("content must not be empty")
        resolved_id = letter_id or f"letter_{secrets.token_hex(8)}"
        with self._session() as session:
            with session.begin():
                if session.get(_LetterUserRow, user_id) is None:
                    raise RecipientNotFoundError(user_id)
                row = _LetterRow(
                    letter_id=resolved_id,
                    user_id=user_id,
                    title=title,
                    content=content,
                    created_at=created,
                    due_at=due,
                    delivery_state=delivery_state,
                    is_delivered=delivery_state == "sent",
                    delivered_at=None,
                    sent_at=None,
                    retry_count=0,
                    last_error=None,
                    provider_message_id=None,
                )
                session.add(row)
            return _item_from_row(row)

    def find_due_undelivered(self, window_start: datetime, window_end: datetime) -> list[DueLetter]:
        _ = window_start
        cutoff = _coerce_utc(window_end)
        statement = (
            select(_LetterRow, _LetterUserRow)
            .outerjoin(_LetterUserRow, _LetterUserRow.user_id == _LetterRow.user_id)
            .where(_LetterRow.due_at < cutoff)
            .where(_LetterRow.is_delivered.is_(False))
            # Unknown and missing states read as unscheduled, so only "sent" is excluded.
            .where(_LetterRow.delivery_state.is_distinct_from("sent"))
            .order_by(_LetterRow.due_at, _LetterRow.letter_id)
        )
        with self._session() as session:
            rows = session.execute(statement).all()
            return [
                DueLetter(
                    item=_item_from_row(letter_row),
                    recipient=(
                        Recipient(user_id=user_row.user_id, email=user_row.email, name=user_row.name)
                        if user_row is not None
                        else None
                    ),
                )
                for letter_row, user_row in rows
            ]

    def update_delivery_state(self, letter_id: str, patch: DeliveryPatch) -> DeliverableItem:
        values: dict[str, object] = {
            "delivery_state": patch.delivery_state,
            "is_delivered": patch.is_delivered,
            "last_error": patch.last_error,
        }
        if patch.is_delivered:
            values["delivered_at"] = patch.delivered_at
            values["provider_message_id"] = patch.provider_message_id
        if patch.sent_at is not None:
            values["sent_at"] = patch.sent_at
        if patch.increment_retry:
            values["retry_count"] = _LetterRow.retry_count + 1
        elif patch.retry_count is not None:
            values["retry_count"] = patch.retry_count

        statement = (
            update(_LetterRow)
            .where(_LetterRow.letter_id == letter_id)
            .where(_LetterRow.is_delivered.is_(False))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            with session.begin():
                result = session.execute(statement)
                if result.rowcount == 0:
                    if session.get(_LetterRow, letter_id) is None:
                        raise LetterNotFoundError(letter_id)
                    raise LetterAlreadyDeliveredError(f"letter already delivered: {letter_id}")
            row = session.get(_LetterRow, letter_id, populate_existing=True)
            if row is None:
                raise LetterNotFoundError(letter_id)
            return _item_from_row(row)

    def get_letter(self, letter_id: str) -> DeliverableItem:
        with self._session() as session:
            row = session.get(_LetterRow, letter_id)
            if row is None:
                raise LetterNotFoundError(letter_id)
            return _item_from_row(row)


def create_letter_repository(*, backend: str, database_url: str) -> LetterRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyLetterRepository(database_url)
    if normalized == "inmemory":
        return InMemoryLetterRepository()
    raise RuntimeError(f"unsupported LETTER_STORE_BACKEND: {backend}")
