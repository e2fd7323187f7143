from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from threading import Lock
from typing import Any, Protocol, Sequence

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from framix_server.errors import DuplicateJobError, StorageError
from framix_server.models import RenderJobRecord
from framix_server.services.jobs.types import Job, JobStatus

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class JobRepository(Protocol):
    def create(self, job_id: str, template_id: str) -> Job: ...

    def get(self, job_id: str) -> Job | None: ...

    def update(
        self,
        job_id: str,
        *,
        status: JobStatus = UNSET,
        progress: dict[str, Any] | None = UNSET,
        result: dict[str, Any] | None = UNSET,
        error: str | None = UNSET,
    ) -> Job | None: ...

    def list_recent(self, limit: int) -> Sequence[Job]: ...

    def list_by_status(self, status: JobStatus, limit: int | None = None) -> Sequence[Job]: ...


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_job(record: RenderJobRecord) -> Job:
    return Job(
        id=record.id,
        template_id=record.template_id,
        status=JobStatus(record.status),
        progress=record.progress,
        result=record.result,
        error=record.error,
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
    )


class SqlJobStore:
    """
    Write-through job store backed by a SQLAlchemy engine.

    Every mutation commits before returning. Read-modify-write updates run
    under a single lock so partial merges from different callers never
    interleave.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = Lock()
        self._last_created_at: datetime | None = None

    def _next_created_at(self, session: Session) -> datetime:
        if self._last_created_at is None:
            latest = session.scalar(select(func.max(RenderJobRecord.created_at)))
            self._last_created_at = _as_utc(latest) if latest is not None else None

        now = datetime.now(timezone.utc)
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + _TICK
        self._last_created_at = now
        return now

    def create(self, job_id: str, template_id: str) -> Job:
        with self._lock:
            try:
                with Session(self._engine) as session:
                    if session.get(RenderJobRecord, job_id) is not None:
                        raise DuplicateJobError(job_id)

                    created_at = self._next_created_at(session)
                    record = RenderJobRecord(
                        id=job_id,
                        template_id=template_id,
                        status=JobStatus.PENDING.value,
                        progress=None,
                        result=None,
                        error=None,
                        created_at=created_at,
                        updated_at=created_at,
                    )
                    session.add(record)
                    session.commit()
                    return _to_job(record)
            except IntegrityError as exc:
                raise DuplicateJobError(job_id) from exc
            except SQLAlchemyError as exc:
                raise StorageError(f"failed to create job {job_id}: {exc}") from exc

    def get(self, job_id: str) -> Job | None:
        try:
            with Session(self._engine) as session:
                record = session.get(RenderJobRecord, job_id)
                return _to_job(record) if record is not None else None
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to read job {job_id}: {exc}") from exc

    def update(
        self,
        job_id: str,
        *,
        status: JobStatus = UNSET,
        progress: dict[str, Any] | None = UNSET,
        result: dict[str, Any] | None = UNSET,
        error: str | None = UNSET,
    ) -> Job | None:
        with self._lock:
            try:
                with Session(self._engine) as session:
                    record = session.get(RenderJobRecord, job_id)
                    if record is None:
                        logger.warning("update skipped for unknown job job_id=%s", job_id)
                        return None

                    if status is not UNSET:
                        record.status = JobStatus(status).value
                    if progress is not UNSET:
                        record.progress = progress
                    if result is not UNSET:
                        record.result = result
                    if error is not UNSET:
                        record.error = error

                    now = datetime.now(timezone.utc)
                    previous = _as_utc(record.updated_at)
                    record.updated_at = now if now > previous else previous + _TICK
                    session.commit()
                    return _to_job(record)
            except SQLAlchemyError as exc:
                raise StorageError(f"failed to update job {job_id}: {exc}") from exc

    def list_recent(self, limit: int) -> list[Job]:
        stmt = (
            select(RenderJobRecord)
            .order_by(RenderJobRecord.created_at.desc(), RenderJobRecord.id.desc())
            .limit(max(0, limit))
        )
        return self._list(stmt)

    def list_by_status(self, status: JobStatus, limit: int | None = None) -> list[Job]:
        stmt = (
            select(RenderJobRecord)
            .where(RenderJobRecord.status == JobStatus(status).value)
            .order_by(RenderJobRecord.created_at.asc(), RenderJobRecord.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(max(0, limit))
        return self._list(stmt)

    def _list(self, stmt) -> list[Job]:
        try:
            with Session(self._engine) as session:
                return [_to_job(record) for record in session.scalars(stmt).all()]
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to list jobs: {exc}") from exc
