from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from storeshift.db.models import FileStatus, MigrationStatus

_RESUMABLE_STATUSES = {MigrationStatus.PAUSED, MigrationStatus.FAILED}


def format_bytes(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    if size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{round(seconds)} seconds"
    if seconds < 3600:
        return f"{round(seconds / 60)} minutes"
    return f"{seconds / 3600:.1f} hours"


@dataclass(frozen=True)
class MigrationOptions:
    """Start-time knobs. ``None`` means "use the configured default"."""

    continue_on_error: bool = True
    concurrency: int | None = None
    verify_integrity: bool = True
    max_attempts: int | None = None
    filter_prefix: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "MigrationOptions":
        raw = raw or {}
        return cls(
            continue_on_error=bool(raw.get("continue_on_error", True)),
            concurrency=raw.get("concurrency"),
            verify_integrity=bool(raw.get("verify_integrity", True)),
            max_attempts=raw.get("max_attempts"),
            filter_prefix=raw.get("filter_prefix"),
        )


@dataclass(frozen=True)
class MigrationScope:
    file_count: int
    total_bytes: int
    estimated_duration_seconds: float

    @property
    def formatted_size(self) -> str:
        return format_bytes(self.total_bytes)

    @property
    def estimated_duration(self) -> str:
        return format_duration(self.estimated_duration_seconds)


@dataclass(frozen=True)
class MigrationErrorSnapshot:
    path: str | None
    error_kind: str
    message: str
    attempt: int
    created_at: datetime


@dataclass(slots=True)
class MigrationJobSnapshot:
    id: str
    workspace_id: str
    status: MigrationStatus
    source_provider: str
    source_config: dict[str, Any]
    target_provider: str
    target_config: dict[str, Any]
    options: dict[str, Any]
    filter_prefix: str | None
    manifest_complete: bool
    total_files: int
    migrated_files: int
    failed_files: int
    skipped_files: int
    total_bytes: int
    migrated_bytes: int
    current_file: str | None
    owner_id: str | None
    lease_expires_at: datetime | None
    error_code: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    estimated_completion_at: datetime | None
    completed_at: datetime | None
    cutover_at: datetime | None
    discarded_at: datetime | None
    errors: list[MigrationErrorSnapshot] = field(default_factory=list)

    @property
    def can_resume(self) -> bool:
        return self.status in _RESUMABLE_STATUSES and self.manifest_complete and self.discarded_at is None

    @property
    def progress(self) -> float:
        if self.total_files <= 0:
            return 1.0 if self.status == MigrationStatus.COMPLETED else 0.0
        return min(1.0, (self.migrated_files + self.failed_files) / self.total_files)


@dataclass(frozen=True)
class FileRecordSnapshot:
    id: int
    job_id: str
    path: str
    size_bytes: int
    status: FileStatus
    attempts: int
    source_checksum: str | None
    target_checksum: str | None
    error_kind: str | None
    last_error: str | None
    duration_ms: int | None
    updated_at: datetime


@dataclass(frozen=True)
class ClaimedFile:
    record_id: int
    job_id: str
    path: str
    size_bytes: int
    attempts: int
    claim_token: str


@dataclass(frozen=True)
class FileOutcome:
    """Result of one copy/verify attempt cycle for a claimed record."""

    claimed: ClaimedFile
    status: FileStatus
    attempts: int
    source_checksum: str | None = None
    target_checksum: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    duration_ms: int | None = None
    fatal: bool = False


@dataclass(frozen=True)
class CutoverResult:
    success: bool
    already_switched: bool
    job_id: str | None


@dataclass(frozen=True)
class JobListResult:
    items: list[MigrationJobSnapshot]
    next_cursor: str | None


@dataclass(frozen=True)
class FileRecordListResult:
    items: list[FileRecordSnapshot]
    next_cursor: int | None
