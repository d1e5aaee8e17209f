from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from storeshift.api.schemas.migrations import (
    CompleteMigrationRequest,
    CutoverResponse,
    FileRecordListResponse,
    FileRecordResponse,
    MigrationListResponse,
    MigrationResponse,
    MigrationScopeResponse,
    ResumeMigrationRequest,
    StartMigrationRequest,
    StartMigrationResponse,
)
from storeshift.db.models import FileStatus
from storeshift.migration.coordinator import MigrationCoordinator
from storeshift.migration.errors import (
    CutoverRejectedError,
    InvalidMigrationStateError,
    JobAlreadyActiveError,
    MigrationNotFoundError,
    MigrationPolicyError,
    NotResumableError,
)
from storeshift.migration.store import snapshot_to_dict
from storeshift.migration.types import MigrationJobSnapshot, MigrationOptions
from storeshift.storage.errors import BackendConfigError, StorageError, UnsupportedProviderError
from storeshift.worker.pipeline import get_migration_coordinator
from storeshift.workspaces.service import WorkspaceNotConfiguredError

router = APIRouter(tags=["migrations"])


def get_coordinator() -> MigrationCoordinator:
    return get_migration_coordinator()


def _to_response(snapshot: MigrationJobSnapshot) -> MigrationResponse:
    return MigrationResponse.model_validate(snapshot_to_dict(snapshot))


@router.get("/workspaces/{workspace_id}/migrations/scope", response_model=MigrationScopeResponse)
def calculate_scope(
    workspace_id: str,
    filter_prefix: str | None = None,
    coordinator: MigrationCoordinator = Depends(get_coordinator),
) -> MigrationScopeResponse:
    try:
        scope = coordinator.calculate_scope(workspace_id, filter_prefix=filter_prefix)
    except WorkspaceNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (MigrationPolicyError, UnsupportedProviderError, BackendConfigError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"{exc.error_kind}: {exc}") from exc
    return MigrationScopeResponse(
        file_count=scope.file_count,
        total_bytes=scope.total_bytes,
        formatted_size=scope.formatted_size,
        estimated_duration_seconds=scope.estimated_duration_seconds,
        estimated_duration=scope.estimated_duration,
    )


@router.post(
    "/workspaces/{workspace_id}/migrations",
    response_model=StartMigrationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def start_migration(
    workspace_id: str,
    request: StartMigrationRequest,
    coordinator: MigrationCoordinator = Depends(get_coordinator),
) -> StartMigrationResponse:
    options = MigrationOptions(
        continue_on_error=request.continue_on_error,
        concurrency=request.concurrency,
        verify_integrity=request.verify_integrity,
        max_attempts=request.max_attempts,
        filter_prefix=request.filter_prefix,
    )
    try:
        job_id = coordinator.start_migration(workspace_id, request.target_provider, request.target_config, options)
    except WorkspaceNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobAlreadyActiveError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (MigrationPolicyError, UnsupportedProviderError, BackendConfigError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return StartMigrationResponse(job_id=job_id, migration=_to_response(coordinator.get_progress(job_id)))


@router.get("/workspaces/{workspace_id}/migrations", response_model=MigrationListResponse)
def list_migrations(
    workspace_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = None,
    include_discarded: bool = False,
    coordinator: MigrationCoordinator = Depends(get_coordinator),
) -> MigrationListResponse:
    try:
        result = coordinator.list_jobs(workspace_id, limit=limit, cursor=cursor, include_discarded=include_discarded)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return MigrationListResponse(items=[_to_response(item) for item in result.items], next_cursor=result.next_cursor)


@router.get("/workspaces/{workspace_id}/migrations/current", response_model=MigrationResponse)
def get_current_migration(
    workspace_id: str,
    coordinator: MigrationCoordinator = Depends(get_coordinator),
) -> MigrationResponse:
    snapshot = coordinator.get_current_job(workspace_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No migration for workspace {workspace_id}")
    return _to_response(snapshot)


@router.post("/workspaces/{workspace_id}/migrations/complete", response_model=CutoverResponse)
def complete_migration(
    workspace_id: str,
    request: CompleteMigrationRequest,
    coordinator: MigrationCoordinator = Depends(get_coordinator),
) -> CutoverResponse:
    try:
        result = coordinator.complete_migration(
            workspace_id,
            request.target_provider,
            request.target_config,
            override=request.override,
        )
    except CutoverRejectedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except UnsupportedProviderError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return CutoverResponse.model_validate(result)


@router.get("/migrations/{job_id}", response_model=MigrationResponse)
def get_migration(job_id: str, coordinator: MigrationCoordinator = Depends(get_coordinator)) -> MigrationResponse:
    try:
        snapshot = coordinator.get_progress(job_id)
    except MigrationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _to_response(snapshot)


@router.get("/migrations/{job_id}/files", response_model=FileRecordListResponse)
def list_migration_files(
    job_id: str,
    file_status: FileStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    cursor: int | None = Query(default=None, ge=0),
    coordinator: MigrationCoordinator = Depends(get_coordinator),
) -> FileRecordListResponse:
    try:
        result = coordinator.list_file_records(job_id, status=file_status, limit=limit, cursor=cursor)
    except MigrationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return FileRecordListResponse(
        items=[FileRecordResponse.model_validate(item) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.post("/migrations/{job_id}/cancel", response_model=MigrationResponse, status_code=status.HTTP_202_ACCEPTED)
def cancel_migration(job_id: str, coordinator: MigrationCoordinator = Depends(get_coordinator)) -> MigrationResponse:
    try:
        snapshot = coordinator.cancel_migration(job_id)
    except MigrationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidMigrationStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_response(snapshot)


@router.post("/migrations/{job_id}/pause", response_model=MigrationResponse, status_code=status.HTTP_202_ACCEPTED)
def pause_migration(job_id: str, coordinator: MigrationCoordinator = Depends(get_coordinator)) -> MigrationResponse:
    try:
        snapshot = coordinator.pause_migration(job_id)
    except MigrationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidMigrationStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_response(snapshot)


@router.post("/migrations/{job_id}/resume", response_model=MigrationResponse, status_code=status.HTTP_202_ACCEPTED)
def resume_migration(
    job_id: str,
    request: ResumeMigrationRequest | None = None,
    coordinator: MigrationCoordinator = Depends(get_coordinator),
) -> MigrationResponse:
    reset_failed = request.reset_failed if request is not None else False
    try:
        snapshot = coordinator.resume_migration(job_id, reset_failed=reset_failed)
    except MigrationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (NotResumableError, InvalidMigrationStateError, JobAlreadyActiveError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_response(snapshot)


@router.delete("/migrations/{job_id}", response_model=MigrationResponse)
def discard_migration(job_id: str, coordinator: MigrationCoordinator = Depends(get_coordinator)) -> MigrationResponse:
    try:
        snapshot = coordinator.discard_migration(job_id)
    except MigrationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidMigrationStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_response(snapshot)
