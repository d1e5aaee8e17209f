from storeshift.workspaces.service import (
    WorkspaceNotConfiguredError,
    WorkspaceStorageLockedError,
    WorkspaceStorageService,
)
from storeshift.workspaces.types import WorkspaceStorageSnapshot

__all__ = [
    "WorkspaceNotConfiguredError",
    "WorkspaceStorageLockedError",
    "WorkspaceStorageService",
    "WorkspaceStorageSnapshot",
]
