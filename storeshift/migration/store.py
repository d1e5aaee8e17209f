from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from storeshift.core.config import Settings
from storeshift.core.logging import redact_config
from storeshift.core.secrets import ConfigCipher, ConfigDecryptionError, config_fingerprint
from storeshift.db.models import (
    ACTIVE_MIGRATION_STATUSES,
    ControlRequest,
    FileMigrationRecord,
    FileStatus,
    MigrationErrorEntry,
    MigrationJob,
    MigrationStatus,
)
from storeshift.db.session import write_lock
from storeshift.migration.errors import (
    InvalidMigrationStateError,
    JobAlreadyActiveError,
    MigrationNotFoundError,
    NotResumableError,
)
from storeshift.migration.types import (
    ClaimedFile,
    FileOutcome,
    FileRecordListResult,
    FileRecordSnapshot,
    JobListResult,
    MigrationErrorSnapshot,
    MigrationJobSnapshot,
    MigrationOptions,
)
from storeshift.storage.base import ObjectInfo
from storeshift.storage.errors import FAIL_SOFT_ERROR_KINDS

ALLOWED_TRANSITIONS: dict[MigrationStatus, set[MigrationStatus]] = {
    MigrationStatus.PENDING: {MigrationStatus.IN_PROGRESS, MigrationStatus.FAILED, MigrationStatus.CANCELLED},
    MigrationStatus.IN_PROGRESS: {
        MigrationStatus.COMPLETED,
        MigrationStatus.FAILED,
        MigrationStatus.CANCELLED,
        MigrationStatus.PAUSED,
    },
    MigrationStatus.PAUSED: {MigrationStatus.IN_PROGRESS, MigrationStatus.CANCELLED},
    MigrationStatus.FAILED: {MigrationStatus.IN_PROGRESS},
    MigrationStatus.COMPLETED: set(),
    MigrationStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = {MigrationStatus.COMPLETED, MigrationStatus.FAILED, MigrationStatus.CANCELLED}
_OWNED_STATUSES = (MigrationStatus.PENDING, MigrationStatus.IN_PROGRESS)


class MigrationJobStore:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session], cipher: ConfigCipher):
        self._settings = settings
        self._session_factory = session_factory
        self._cipher = cipher

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _lease_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.migration_lease_ttl_seconds)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _enforce_transition(self, from_status: MigrationStatus, to_status: MigrationStatus) -> None:
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidMigrationStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")

    def _load_job(self, session: Session, job_id: str) -> MigrationJob:
        job = session.get(MigrationJob, job_id)
        if job is None:
            raise MigrationNotFoundError(f"Migration not found: {job_id}")
        return job

    def _active_job_id(self, session: Session, workspace_id: str) -> str | None:
        return session.scalar(
            select(MigrationJob.id).where(
                MigrationJob.workspace_id == workspace_id,
                MigrationJob.status.in_(ACTIVE_MIGRATION_STATUSES),
                MigrationJob.discarded_at.is_(None),
            )
        )

    def create_job(
        self,
        *,
        workspace_id: str,
        source_provider: str,
        source_config: dict[str, Any],
        target_provider: str,
        target_config: dict[str, Any],
        options: MigrationOptions,
        owner_id: str,
    ) -> MigrationJobSnapshot:
        job_id = str(uuid4())
        now = self._now()
        with write_lock(), self._session_factory() as session:
            active = self._active_job_id(session, workspace_id)
            if active is not None:
                raise JobAlreadyActiveError(f"Workspace {workspace_id} already has an active migration: {active}")

            job = MigrationJob(
                id=job_id,
                workspace_id=workspace_id,
                status=MigrationStatus.PENDING,
                source_provider=source_provider,
                source_config=self._cipher.encrypt(source_config),
                target_provider=target_provider,
                target_config=self._cipher.encrypt(target_config),
                target_fingerprint=config_fingerprint(target_provider, target_config),
                options=options.to_dict(),
                filter_prefix=options.filter_prefix,
                owner_id=owner_id,
                lease_expires_at=now + self._lease_delta(),
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise JobAlreadyActiveError(f"Workspace {workspace_id} already has an active migration") from exc
            session.refresh(job)
            return self._to_snapshot(session, job)

    def load_backend_configs(self, job_id: str) -> tuple[str, dict[str, Any], str, dict[str, Any]]:
        with self._session_factory() as session:
            job = self._load_job(session, job_id)
            try:
                return (
                    job.source_provider,
                    self._cipher.decrypt(job.source_config),
                    job.target_provider,
                    self._cipher.decrypt(job.target_config),
                )
            except ConfigDecryptionError as exc:
                raise NotResumableError(f"Backend configs of migration {job_id} are unreadable: {exc}") from exc

    def add_manifest_batch(self, job_id: str, items: Sequence[ObjectInfo]) -> int:
        now = self._now()
        seen: set[str] = set()
        rows: list[dict[str, Any]] = []
        skipped = 0
        for item in items:
            if item.path in seen:
                skipped += 1
                continue
            seen.add(item.path)
            rows.append(
                {
                    "job_id": job_id,
                    "path": item.path,
                    "size_bytes": item.size_bytes,
                    "status": FileStatus.PENDING,
                    "attempts": 0,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        added_bytes = sum(row["size_bytes"] for row in rows)

        with write_lock(), self._session_factory() as session:
            try:
                if rows:
                    session.execute(insert(FileMigrationRecord), rows)
                session.execute(
                    update(MigrationJob)
                    .where(MigrationJob.id == job_id)
                    .values(
                        total_files=MigrationJob.total_files + len(rows),
                        total_bytes=MigrationJob.total_bytes + added_bytes,
                        skipped_files=MigrationJob.skipped_files + skipped,
                        updated_at=now,
                    )
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise InvalidMigrationStateError(f"Manifest batch for {job_id} repeats an existing path") from exc
        return len(rows)

    def mark_manifest_complete(self, job_id: str) -> MigrationJobSnapshot:
        with write_lock(), self._session_factory() as session:
            job = self._load_job(session, job_id)
            now = self._now()
            job.manifest_complete = True
            rate = self._settings.migration_assumed_throughput_bytes_per_sec
            job.estimated_completion_at = now + timedelta(seconds=job.total_bytes / rate)
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(session, job)

    def reset_manifest(self, job_id: str) -> None:
        with write_lock(), self._session_factory() as session:
            job = self._load_job(session, job_id)
            if job.status != MigrationStatus.PENDING:
                raise InvalidMigrationStateError(f"Manifest of {job_id} can only be rebuilt while pending")
            session.execute(delete(FileMigrationRecord).where(FileMigrationRecord.job_id == job_id))
            job.manifest_complete = False
            job.total_files = 0
            job.total_bytes = 0
            job.skipped_files = 0
            job.updated_at = self._now()
            session.commit()

    def transition(
        self,
        job_id: str,
        to_status: MigrationStatus,
        *,
        owner_id: str | None = None,
        expected_owner: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> MigrationJobSnapshot:
        with write_lock(), self._session_factory() as session:
            job = self._load_job(session, job_id)
            if expected_owner is not None and job.owner_id not in (None, expected_owner):
                raise InvalidMigrationStateError(f"Migration {job_id} is owned by {job.owner_id}")
            self._apply_transition(job, to_status, owner_id=owner_id, error_code=error_code, error_message=error_message)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise JobAlreadyActiveError(
                    f"Workspace {job.workspace_id} already has another active migration"
                ) from exc
            session.refresh(job)
            return self._to_snapshot(session, job)

    def _apply_transition(
        self,
        job: MigrationJob,
        to_status: MigrationStatus,
        *,
        owner_id: str | None,
        error_code: str | None,
        error_message: str | None,
    ) -> None:
        self._enforce_transition(job.status, to_status)
        now = self._now()
        # A stop requested while the manifest was being built must survive the start.
        if not (job.status == MigrationStatus.PENDING and to_status == MigrationStatus.IN_PROGRESS):
            job.control_request = None
        job.status = to_status
        job.updated_at = now
        if to_status == MigrationStatus.IN_PROGRESS:
            job.started_at = job.started_at or now
            job.owner_id = owner_id
            job.lease_expires_at = now + self._lease_delta()
            job.completed_at = None
            job.error_code = None
            job.error_message = None
            return
        job.owner_id = None
        job.lease_expires_at = None
        job.estimated_completion_at = None
        if to_status in TERMINAL_STATUSES:
            job.completed_at = now
        if error_code is not None:
            job.error_code = error_code
        if error_message is not None:
            job.error_message = error_message

    def prepare_resume(self, job_id: str, *, owner_id: str, reset_failed: bool = False) -> MigrationJobSnapshot:
        """Requeue unfinished records and move a paused or failed job back to in_progress."""
        with write_lock(), self._session_factory() as session:
            job = self._load_job(session, job_id)
            if job.discarded_at is not None:
                raise NotResumableError(f"Migration {job_id} was discarded")
            if job.status not in (MigrationStatus.PAUSED, MigrationStatus.FAILED):
                raise NotResumableError(f"Migration {job_id} is {job.status.value} and cannot be resumed")
            if not job.manifest_complete:
                raise NotResumableError(f"Migration {job_id} has no complete manifest to resume from")

            now = self._now()
            self._requeue_copying(session, job_id, now)
            if reset_failed:
                reset = session.execute(
                    update(FileMigrationRecord)
                    .where(FileMigrationRecord.job_id == job_id, FileMigrationRecord.status == FileStatus.FAILED)
                    .values(status=FileStatus.PENDING, attempts=0, error_kind=None, last_error=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                ).rowcount
                job.failed_files = max(0, job.failed_files - int(reset or 0))
            self._apply_transition(job, MigrationStatus.IN_PROGRESS, owner_id=owner_id, error_code=None, error_message=None)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise JobAlreadyActiveError(
                    f"Workspace {job.workspace_id} already has another active migration"
                ) from exc
            session.refresh(job)
            return self._to_snapshot(session, job)

    def _requeue_copying(self, session: Session, job_id: str, now: datetime) -> int:
        result = session.execute(
            update(FileMigrationRecord)
            .where(FileMigrationRecord.job_id == job_id, FileMigrationRecord.status == FileStatus.COPYING)
            .values(status=FileStatus.PENDING, claim_token=None, claimed_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def requeue_in_flight(self, job_id: str) -> int:
        with write_lock(), self._session_factory() as session:
            count = self._requeue_copying(session, job_id, self._now())
            session.commit()
            return count

    def claim_next(self, job_id: str) -> ClaimedFile | None:
        token = uuid4().hex
        now = self._now()
        candidate = (
            select(FileMigrationRecord.id)
            .where(FileMigrationRecord.job_id == job_id, FileMigrationRecord.status == FileStatus.PENDING)
            .order_by(FileMigrationRecord.id.asc())
            .limit(1)
            .scalar_subquery()
        )
        stmt = (
            update(FileMigrationRecord)
            .where(FileMigrationRecord.id == candidate, FileMigrationRecord.status == FileStatus.PENDING)
            .values(status=FileStatus.COPYING, claim_token=token, claimed_at=now, updated_at=now)
            .returning(
                FileMigrationRecord.id,
                FileMigrationRecord.path,
                FileMigrationRecord.size_bytes,
                FileMigrationRecord.attempts,
            )
            .execution_options(synchronize_session=False)
        )
        with write_lock(), self._session_factory() as session:
            row = session.execute(stmt).first()
            if row is None:
                session.rollback()
                return None
            session.commit()
        return ClaimedFile(
            record_id=row.id,
            job_id=job_id,
            path=row.path,
            size_bytes=row.size_bytes,
            attempts=row.attempts,
            claim_token=token,
        )

    def release_claim(self, claimed: ClaimedFile, *, attempts: int, last_error: str | None = None) -> bool:
        with write_lock(), self._session_factory() as session:
            result = session.execute(
                update(FileMigrationRecord)
                .where(
                    FileMigrationRecord.id == claimed.record_id,
                    FileMigrationRecord.claim_token == claimed.claim_token,
                    FileMigrationRecord.status == FileStatus.COPYING,
                )
                .values(
                    status=FileStatus.PENDING,
                    attempts=attempts,
                    last_error=last_error,
                    claim_token=None,
                    claimed_at=None,
                    updated_at=self._now(),
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return bool(result.rowcount)

    def apply_file_outcome(
        self,
        outcome: FileOutcome,
        *,
        estimated_completion_at: datetime | None = None,
    ) -> bool:
        """Persist one terminal per-file result and bump the job counters in the same transaction.

        Returns False when the claim was lost (the record was requeued by a
        recovering owner), in which case counters are left untouched.
        """
        if outcome.status not in (FileStatus.VERIFIED, FileStatus.FAILED):
            raise ValueError(f"Outcome status must be terminal, got {outcome.status.value}")

        claimed = outcome.claimed
        now = self._now()
        with write_lock(), self._session_factory() as session:
            result = session.execute(
                update(FileMigrationRecord)
                .where(
                    FileMigrationRecord.id == claimed.record_id,
                    FileMigrationRecord.claim_token == claimed.claim_token,
                    FileMigrationRecord.status == FileStatus.COPYING,
                )
                .values(
                    status=outcome.status,
                    attempts=outcome.attempts,
                    source_checksum=outcome.source_checksum,
                    target_checksum=outcome.target_checksum,
                    error_kind=outcome.error_kind,
                    last_error=outcome.error_message,
                    duration_ms=outcome.duration_ms,
                    claim_token=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                session.rollback()
                return False

            values: dict[str, Any] = {"current_file": claimed.path, "updated_at": now}
            if estimated_completion_at is not None:
                values["estimated_completion_at"] = estimated_completion_at
            if outcome.status == FileStatus.VERIFIED:
                values["migrated_files"] = MigrationJob.migrated_files + 1
                values["migrated_bytes"] = MigrationJob.migrated_bytes + claimed.size_bytes
            else:
                values["failed_files"] = MigrationJob.failed_files + 1
                recorded = session.scalar(
                    select(func.count()).select_from(MigrationErrorEntry).where(MigrationErrorEntry.job_id == claimed.job_id)
                )
                if int(recorded or 0) < self._settings.migration_max_recorded_errors:
                    session.add(
                        MigrationErrorEntry(
                            job_id=claimed.job_id,
                            path=claimed.path,
                            error_kind=outcome.error_kind or "UnknownError",
                            message=outcome.error_message or "",
                            attempt=outcome.attempts,
                            created_at=now,
                        )
                    )
            session.execute(update(MigrationJob).where(MigrationJob.id == claimed.job_id).values(**values))
            session.commit()
            return True

    def record_job_error(self, job_id: str, *, error_kind: str, message: str, path: str | None = None) -> None:
        with write_lock(), self._session_factory() as session:
            session.add(
                MigrationErrorEntry(
                    job_id=job_id,
                    path=path,
                    error_kind=error_kind,
                    message=message,
                    attempt=0,
                    created_at=self._now(),
                )
            )
            session.commit()

    def count_files_by_status(self, job_id: str) -> dict[FileStatus, int]:
        with self._session_factory() as session:
            rows = session.execute(
                select(FileMigrationRecord.status, func.count())
                .where(FileMigrationRecord.job_id == job_id)
                .group_by(FileMigrationRecord.status)
            ).all()
        counts = {status: 0 for status in FileStatus}
        for status, count in rows:
            counts[FileStatus(status)] = int(count)
        return counts

    def count_threshold_failures(self, job_id: str) -> int:
        """Failed records that count toward the abort threshold (fail-soft kinds excluded)."""
        with self._session_factory() as session:
            count = session.scalar(
                select(func.count())
                .select_from(FileMigrationRecord)
                .where(
                    FileMigrationRecord.job_id == job_id,
                    FileMigrationRecord.status == FileStatus.FAILED,
                    or_(
                        FileMigrationRecord.error_kind.is_(None),
                        FileMigrationRecord.error_kind.not_in(sorted(FAIL_SOFT_ERROR_KINDS)),
                    ),
                )
            )
        return int(count or 0)

    def renew_lease(self, job_id: str, owner_id: str) -> ControlRequest | None:
        """Extend the owner lease and return any persisted control request."""
        now = self._now()
        with write_lock(), self._session_factory() as session:
            result = session.execute(
                update(MigrationJob)
                .where(
                    MigrationJob.id == job_id,
                    MigrationJob.owner_id == owner_id,
                    MigrationJob.status.in_(_OWNED_STATUSES),
                )
                .values(lease_expires_at=now + self._lease_delta())
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                session.rollback()
                raise InvalidMigrationStateError(f"Lease on migration {job_id} is no longer held by {owner_id}")
            control_request = session.scalar(select(MigrationJob.control_request).where(MigrationJob.id == job_id))
            session.commit()
        return ControlRequest(control_request) if control_request is not None else None

    def set_control_request(self, job_id: str, request: ControlRequest) -> MigrationJobSnapshot:
        with write_lock(), self._session_factory() as session:
            job = self._load_job(session, job_id)
            # A cancel supersedes a pending pause; a pause never downgrades a cancel.
            if job.control_request != ControlRequest.CANCEL:
                job.control_request = request
            job.updated_at = self._now()
            session.commit()
            session.refresh(job)
            return self._to_snapshot(session, job)

    def find_orphaned_jobs(self) -> list[str]:
        now = self._now()
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(MigrationJob.id)
                    .where(
                        MigrationJob.status.in_(_OWNED_STATUSES),
                        MigrationJob.discarded_at.is_(None),
                        or_(MigrationJob.lease_expires_at.is_(None), MigrationJob.lease_expires_at <= now),
                    )
                    .order_by(MigrationJob.created_at.asc(), MigrationJob.id.asc())
                ).all()
            )

    def claim_orphan(self, job_id: str, owner_id: str) -> bool:
        now = self._now()
        with write_lock(), self._session_factory() as session:
            result = session.execute(
                update(MigrationJob)
                .where(
                    MigrationJob.id == job_id,
                    MigrationJob.status.in_(_OWNED_STATUSES),
                    MigrationJob.discarded_at.is_(None),
                    or_(MigrationJob.lease_expires_at.is_(None), MigrationJob.lease_expires_at <= now),
                )
                .values(owner_id=owner_id, lease_expires_at=now + self._lease_delta(), updated_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return bool(result.rowcount)

    def is_lease_expired(self, job_id: str) -> bool:
        with self._session_factory() as session:
            job = self._load_job(session, job_id)
            lease = self._coerce_utc(job.lease_expires_at)
            return lease is None or lease <= self._now()

    def discard(self, job_id: str) -> MigrationJobSnapshot:
        with write_lock(), self._session_factory() as session:
            job = self._load_job(session, job_id)
            if job.status not in TERMINAL_STATUSES:
                raise InvalidMigrationStateError(
                    f"Only completed, failed or cancelled migrations can be discarded, {job_id} is {job.status.value}"
                )
            if job.discarded_at is None:
                now = self._now()
                job.discarded_at = now
                job.updated_at = now
                session.commit()
                session.refresh(job)
            return self._to_snapshot(session, job)

    def get_job(self, job_id: str) -> MigrationJobSnapshot:
        with self._session_factory() as session:
            return self._to_snapshot(session, self._load_job(session, job_id))

    def get_status(self, job_id: str) -> MigrationStatus:
        with self._session_factory() as session:
            status = session.scalar(select(MigrationJob.status).where(MigrationJob.id == job_id))
            if status is None:
                raise MigrationNotFoundError(f"Migration not found: {job_id}")
            return MigrationStatus(status)

    def get_active_job(self, workspace_id: str) -> MigrationJobSnapshot | None:
        with self._session_factory() as session:
            job_id = self._active_job_id(session, workspace_id)
            if job_id is None:
                return None
            return self._to_snapshot(session, self._load_job(session, job_id))

    def get_latest_job(self, workspace_id: str) -> MigrationJobSnapshot | None:
        with self._session_factory() as session:
            job = session.scalar(
                select(MigrationJob)
                .where(MigrationJob.workspace_id == workspace_id, MigrationJob.discarded_at.is_(None))
                .order_by(MigrationJob.created_at.desc(), MigrationJob.id.desc())
                .limit(1)
            )
            if job is None:
                return None
            return self._to_snapshot(session, job)

    def list_jobs(
        self,
        workspace_id: str,
        *,
        limit: int = 50,
        cursor: str | None = None,
        include_discarded: bool = False,
    ) -> JobListResult:
        bounded_limit = max(1, min(limit, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = (
                select(MigrationJob)
                .where(MigrationJob.workspace_id == workspace_id)
                .order_by(MigrationJob.created_at.desc(), MigrationJob.id.desc())
                .limit(bounded_limit + 1)
            )
            if not include_discarded:
                stmt = stmt.where(MigrationJob.discarded_at.is_(None))
            if cursor:
                anchor_exists = session.scalar(
                    select(MigrationJob.id).where(MigrationJob.id == cursor, MigrationJob.workspace_id == workspace_id)
                )
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_created_at = select(MigrationJob.created_at).where(MigrationJob.id == cursor).scalar_subquery()
                stmt = stmt.where(
                    or_(
                        MigrationJob.created_at < anchor_created_at,
                        and_(MigrationJob.created_at == anchor_created_at, MigrationJob.id < cursor),
                    )
                )
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return JobListResult(items=[self._to_snapshot(session, row) for row in items], next_cursor=next_cursor)

    def list_file_records(
        self,
        job_id: str,
        *,
        status: FileStatus | None = None,
        limit: int = 100,
        cursor: int | None = None,
    ) -> FileRecordListResult:
        bounded_limit = max(1, min(limit, self._settings.max_page_size))
        with self._session_factory() as session:
            self._load_job(session, job_id)
            stmt = (
                select(FileMigrationRecord)
                .where(FileMigrationRecord.job_id == job_id)
                .order_by(FileMigrationRecord.id.asc())
                .limit(bounded_limit + 1)
            )
            if status is not None:
                stmt = stmt.where(FileMigrationRecord.status == status)
            if cursor is not None:
                stmt = stmt.where(FileMigrationRecord.id > cursor)
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return FileRecordListResult(items=[self._to_file_snapshot(row) for row in items], next_cursor=next_cursor)

    def _redacted(self, token: str) -> dict[str, Any]:
        try:
            return redact_config(self._cipher.decrypt(token))
        except ConfigDecryptionError:
            return {"error": "undecryptable"}

    def _to_snapshot(self, session: Session, job: MigrationJob) -> MigrationJobSnapshot:
        error_rows = session.scalars(
            select(MigrationErrorEntry)
            .where(MigrationErrorEntry.job_id == job.id)
            .order_by(MigrationErrorEntry.id.asc())
            .limit(self._settings.migration_max_recorded_errors)
        ).all()
        return MigrationJobSnapshot(
            id=job.id,
            workspace_id=job.workspace_id,
            status=job.status,
            source_provider=job.source_provider,
            source_config=self._redacted(job.source_config),
            target_provider=job.target_provider,
            target_config=self._redacted(job.target_config),
            options=dict(job.options or {}),
            filter_prefix=job.filter_prefix,
            manifest_complete=job.manifest_complete,
            total_files=job.total_files,
            migrated_files=job.migrated_files,
            failed_files=job.failed_files,
            skipped_files=job.skipped_files,
            total_bytes=job.total_bytes,
            migrated_bytes=job.migrated_bytes,
            current_file=job.current_file,
            owner_id=job.owner_id,
            lease_expires_at=self._coerce_utc(job.lease_expires_at),
            error_code=job.error_code,
            error_message=job.error_message,
            created_at=self._coerce_utc(job.created_at),
            updated_at=self._coerce_utc(job.updated_at),
            started_at=self._coerce_utc(job.started_at),
            estimated_completion_at=self._coerce_utc(job.estimated_completion_at),
            completed_at=self._coerce_utc(job.completed_at),
            cutover_at=self._coerce_utc(job.cutover_at),
            discarded_at=self._coerce_utc(job.discarded_at),
            errors=[
                MigrationErrorSnapshot(
                    path=row.path,
                    error_kind=row.error_kind,
                    message=row.message,
                    attempt=row.attempt,
                    created_at=self._coerce_utc(row.created_at),
                )
                for row in error_rows
            ],
        )

    def _to_file_snapshot(self, record: FileMigrationRecord) -> FileRecordSnapshot:
        return FileRecordSnapshot(
            id=record.id,
            job_id=record.job_id,
            path=record.path,
            size_bytes=record.size_bytes,
            status=record.status,
            attempts=record.attempts,
            source_checksum=record.source_checksum,
            target_checksum=record.target_checksum,
            error_kind=record.error_kind,
            last_error=record.last_error,
            duration_ms=record.duration_ms,
            updated_at=self._coerce_utc(record.updated_at),
        )


def snapshot_to_dict(snapshot: MigrationJobSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "workspace_id": snapshot.workspace_id,
        "status": snapshot.status.value,
        "source_provider": snapshot.source_provider,
        "source_config": snapshot.source_config,
        "target_provider": snapshot.target_provider,
        "target_config": snapshot.target_config,
        "options": snapshot.options,
        "filter_prefix": snapshot.filter_prefix,
        "manifest_complete": snapshot.manifest_complete,
        "can_resume": snapshot.can_resume,
        "progress": snapshot.progress,
        "total_files": snapshot.total_files,
        "migrated_files": snapshot.migrated_files,
        "failed_files": snapshot.failed_files,
        "skipped_files": snapshot.skipped_files,
        "total_bytes": snapshot.total_bytes,
        "migrated_bytes": snapshot.migrated_bytes,
        "current_file": snapshot.current_file,
        "owner_id": snapshot.owner_id,
        "lease_expires_at": snapshot.lease_expires_at,
        "error_code": snapshot.error_code,
        "error_message": snapshot.error_message,
        "errors": [
            {
                "path": entry.path,
                "error_kind": entry.error_kind,
                "message": entry.message,
                "attempt": entry.attempt,
                "created_at": entry.created_at,
            }
            for entry in snapshot.errors
        ],
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
        "started_at": snapshot.started_at,
        "estimated_completion_at": snapshot.estimated_completion_at,
        "completed_at": snapshot.completed_at,
        "cutover_at": snapshot.cutover_at,
        "discarded_at": snapshot.discarded_at,
    }
