from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from storeshift.db.models import FileStatus


class StartMigrationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_provider: str = Field(min_length=1, max_length=32)
    target_config: dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = True
    concurrency: int | None = Field(default=None, ge=1)
    verify_integrity: bool = True
    max_attempts: int | None = Field(default=None, ge=1, le=20)
    filter_prefix: str | None = Field(default=None, max_length=1024)


class ResumeMigrationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reset_failed: bool = False


class CompleteMigrationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_provider: str = Field(min_length=1, max_length=32)
    target_config: dict[str, Any] = Field(default_factory=dict)
    override: bool = False


class MigrationScopeResponse(BaseModel):
    file_count: int
    total_bytes: int
    formatted_size: str
    estimated_duration_seconds: float
    estimated_duration: str


class MigrationErrorResponse(BaseModel):
    path: str | None
    error_kind: str
    message: str
    attempt: int
    created_at: datetime


class MigrationResponse(BaseModel):
    id: str
    workspace_id: str
    status: str
    source_provider: str
    source_config: dict[str, Any]
    target_provider: str
    target_config: dict[str, Any]
    options: dict[str, Any]
    filter_prefix: str | None
    manifest_complete: bool
    can_resume: bool
    progress: float
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
    errors: list[MigrationErrorResponse]
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    estimated_completion_at: datetime | None
    completed_at: datetime | None
    cutover_at: datetime | None
    discarded_at: datetime | None


class MigrationListResponse(BaseModel):
    items: list[MigrationResponse]
    next_cursor: str | None


class StartMigrationResponse(BaseModel):
    job_id: str
    migration: MigrationResponse


class FileRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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


class FileRecordListResponse(BaseModel):
    items: list[FileRecordResponse]
    next_cursor: int | None


class CutoverResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    already_switched: bool
    job_id: str | None
