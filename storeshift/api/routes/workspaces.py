from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from storeshift.api.schemas.workspaces import ConfigureStorageRequest, WorkspaceStorageResponse
from storeshift.storage.errors import BackendConfigError, UnsupportedProviderError
from storeshift.worker.pipeline import get_migration_coordinator
from storeshift.workspaces.service import (
    WorkspaceNotConfiguredError,
    WorkspaceStorageLockedError,
    WorkspaceStorageService,
)

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


def get_workspace_service() -> WorkspaceStorageService:
    return get_migration_coordinator().workspaces


@router.get("/{workspace_id}/storage", response_model=WorkspaceStorageResponse)
def get_storage(
    workspace_id: str,
    service: WorkspaceStorageService = Depends(get_workspace_service),
) -> WorkspaceStorageResponse:
    try:
        snapshot = service.get_storage(workspace_id)
    except WorkspaceNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return WorkspaceStorageResponse.model_validate(snapshot)


@router.put("/{workspace_id}/storage", response_model=WorkspaceStorageResponse)
def configure_storage(
    workspace_id: str,
    request: ConfigureStorageRequest,
    service: WorkspaceStorageService = Depends(get_workspace_service),
) -> WorkspaceStorageResponse:
    try:
        snapshot = service.configure_storage(workspace_id, request.provider, request.config)
    except WorkspaceStorageLockedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (UnsupportedProviderError, BackendConfigError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return WorkspaceStorageResponse.model_validate(snapshot)
