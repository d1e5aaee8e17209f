from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class MigrationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_MIGRATION_STATUSES: tuple[MigrationStatus, ...] = (
    MigrationStatus.PENDING,
    MigrationStatus.IN_PROGRESS,
    MigrationStatus.PAUSED,
)


class FileStatus(str, Enum):
    PENDING = "pending"
    COPYING = "copying"
    VERIFIED = "verified"
    FAILED = "failed"


class ControlRequest(str, Enum):
    CANCEL = "cancel"
    PAUSE = "pause"


class MigrationJob(Base):
    __tablename__ = "migration_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[MigrationStatus] = mapped_column(
        SAEnum(MigrationStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=MigrationStatus.PENDING,
    )

    source_provider: Mapped[str] = mapped_column(String(32), nullable=False)
    source_config: Mapped[str] = mapped_column(Text, nullable=False)
    target_provider: Mapped[str] = mapped_column(String(32), nullable=False)
    target_config: Mapped[str] = mapped_column(Text, nullable=False)
    target_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    options: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    filter_prefix: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    manifest_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_files: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    migrated_files: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    failed_files: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    skipped_files: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    migrated_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_file: Mapped[str | None] = mapped_column(String(4096), nullable=True)

    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    control_request: Mapped[ControlRequest | None] = mapped_column(
        SAEnum(ControlRequest, native_enum=False, values_callable=_enum_values),
        nullable=True,
    )

    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_completion_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cutover_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    discarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_migration_jobs_workspace_created", "workspace_id", "created_at", "id"),
        Index("ix_migration_jobs_status_lease", "status", "lease_expires_at"),
        Index("ix_migration_jobs_status_updated", "status", "updated_at"),
    )


class FileMigrationRecord(Base):
    __tablename__ = "migration_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("migration_jobs.id", ondelete="CASCADE"), nullable=False)
    path: Mapped[str] = mapped_column(String(4096), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[FileStatus] = mapped_column(
        SAEnum(FileStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=FileStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_checksum: Mapped[str | None] = mapped_column(String(128), nullable=True)
    target_checksum: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("job_id", "path", name="uq_migration_files_job_path"),
        Index("ix_migration_files_job_status", "job_id", "status", "id"),
    )


class MigrationErrorEntry(Base):
    __tablename__ = "migration_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("migration_jobs.id", ondelete="CASCADE"), nullable=False)
    path: Mapped[str | None] = mapped_column(String(4096), nullable=True)
    error_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("ix_migration_errors_job_id", "job_id", "id"),)


class WorkspaceStorage(Base):
    __tablename__ = "workspace_storage"

    workspace_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    config: Mapped[str] = mapped_column(Text, nullable=False)
    config_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    active_job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
