from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DeliveryRunRecord:
    run_id: str
    trigger: str
    status: str
    window_start: datetime | None
    window_end: datetime | None
    started_at: datetime
    finished_at: datetime
    processed_count: int
    sent_count: int
    failed_count: int
    notifier_failed_count: int
    store_failed_count: int
    carried_over_count: int
    error: str | None
    outcomes_json: str = "[]"

    def outcomes(self) -> list[dict[str, object]]:
        parsed = json.loads(self.outcomes_json or "[]")
        return [value for value in parsed if isinstance(value, dict)]


class DeliveryRunRepository(Protocol):
    def reset(self) -> None: ...

    def record_run(self, record: DeliveryRunRecord) -> None: ...

    def get_run(self, run_id: str) -> DeliveryRunRecord | None: ...

    def get_latest_run(self) -> DeliveryRunRecord | None: ...

    def list_runs(self, *, limit: int) -> list[DeliveryRunRecord]: ...


class InMemoryDeliveryRunRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._runs: dict[str, DeliveryRunRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._runs.clear()

    def record_run(self, record: DeliveryRunRecord) -> None:
        with self._lock:
            self._runs[record.run_id] = record

    def get_run(self, run_id: str) -> DeliveryRunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def get_latest_run(self) -> DeliveryRunRecord | None:
        runs = self.list_runs(limit=1)
        return runs[0] if runs else None

    def list_runs(self, *, limit: int) -> list[DeliveryRunRecord]:
        with self._lock:
            ordered = sorted(
                self._runs.values(),
                key=lambda value: (value.started_at, value.run_id),
                reverse=True,
            )
        return ordered[: max(0, limit)]


class DeliveryRunsBase(DeclarativeBase):
    pass


class _DeliveryRunRow(DeliveryRunsBase):
    __tablename__ = "delivery_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    window_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    window_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notifier_failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    store_failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    carried_over_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcomes_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")


def _record_from_row(row: _DeliveryRunRow) -> DeliveryRunRecord:
    return DeliveryRunRecord(
        run_id=row.run_id,
        trigger=row.trigger,
        status=row.status,
        window_start=_coerce_utc(row.window_start) if row.window_start is not None else None,
        window_end=_coerce_utc(row.window_end) if row.window_end is not None else None,
        started_at=_coerce_utc(row.started_at),
        finished_at=_coerce_utc(row.finished_at),
        processed_count=row.processed_count,
        sent_count=row.sent_count,
        failed_count=row.failed_count,
        notifier_failed_count=row.notifier_failed_count,
        store_failed_count=row.store_failed_count,
        carried_over_count=row.carried_over_count,
        error=row.error,
        outcomes_json=row.outcomes_json,
    )


class SqlAlchemyDeliveryRunRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for DELIVERY_RUN_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DeliveryRunsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_DeliveryRunRow).delete()

    def record_run(self, record: DeliveryRunRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.merge(
                    _DeliveryRunRow(
                        run_id=record.run_id,
                        trigger=record.trigger,
                        status=record.status,
                        window_start=record.window_start,
                        window_end=record.window_end,
                        started_at=_coerce_utc(record.started_at),
                        finished_at=_coerce_utc(record.finished_at),
                        processed_count=record.processed_count,
                        sent_count=record.sent_count,
                        failed_count=record.failed_count,
                        notifier_failed_count=record.notifier_failed_count,
                        store_failed_count=record.store_failed_count,
                        carried_over_count=record.carried_over_count,
                        error=record.error,
                        outcomes_json=record.outcomes_json,
                    )
                )

    def get_run(self, run_id: str) -> DeliveryRunRecord | None:
        with self._session() as session:
            row = session.get(_DeliveryRunRow, run_id)
            if row is None:
                return None
            return _record_from_row(row)

    def get_latest_run(self) -> DeliveryRunRecord | None:
        runs = self.list_runs(limit=1)
        return runs[0] if runs else None

    def list_runs(self, *, limit: int) -> list[DeliveryRunRecord]:
        statement = (
            select(_DeliveryRunRow)
            .order_by(_DeliveryRunRow.started_at.desc(), _DeliveryRunRow.run_id.desc())
            .limit(max(0, limit))
        )
        with self._session() as session:
            return [_record_from_row(row) for row in session.scalars(statement)]


def create_delivery_run_repository(*, backend: str, database_url: str) -> DeliveryRunRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDeliveryRunRepository(database_url)
    if normalized == "inmemory":
        return InMemoryDeliveryRunRepository()
    raise RuntimeError(f"unsupported DELIVERY_RUN_STORE_BACKEND: {backend}")
