from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from storeshift.core.config import Settings
from storeshift.core.logging import redact_config
from storeshift.core.secrets import ConfigCipher, config_fingerprint
from storeshift.db.models import ACTIVE_MIGRATION_STATUSES, MigrationJob, WorkspaceStorage
from storeshift.db.session import write_lock
from storeshift.storage.base import StorageBackend
from storeshift.storage.registry import create_backend, normalize_provider
from storeshift.workspaces.types import WorkspaceStorageSnapshot

logger = logging.getLogger(__name__)

BackendFactory = Callable[[str, dict[str, Any]], StorageBackend]


class WorkspaceNotConfiguredError(RuntimeError):
    pass


class WorkspaceStorageLockedError(RuntimeError):
    pass


def validate_workspace_id(raw: str) -> str:
    workspace_id = raw.strip()
    if not workspace_id:
        raise ValueError("workspace_id cannot be blank")
    if len(workspace_id) > 128:
        raise ValueError("workspace_id is longer than 128 characters")
    return workspace_id


class WorkspaceStorageService:
    """Reads and writes a workspace's active storage backend.

    Direct writes are for first-time setup only; once a migration is active the
    active backend changes solely through the cutover step.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        cipher: ConfigCipher,
        *,
        backend_factory: BackendFactory = create_backend,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._cipher = cipher
        self._backend_factory = backend_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def get_storage(self, workspace_id: str) -> WorkspaceStorageSnapshot:
        with self._session_factory() as session:
            row = session.get(WorkspaceStorage, validate_workspace_id(workspace_id))
            if row is None:
                raise WorkspaceNotConfiguredError(f"Workspace {workspace_id} has no storage backend configured")
            return self._to_snapshot(row)

    def get_active_config(self, workspace_id: str) -> tuple[str, dict[str, Any]]:
        with self._session_factory() as session:
            row = session.get(WorkspaceStorage, validate_workspace_id(workspace_id))
            if row is None:
                raise WorkspaceNotConfiguredError(f"Workspace {workspace_id} has no storage backend configured")
            return row.provider, self._cipher.decrypt(row.config)

    def open_active_backend(self, workspace_id: str) -> StorageBackend:
        provider, config = self.get_active_config(workspace_id)
        return self._backend_factory(provider, config)

    def configure_storage(self, workspace_id: str, provider: str, config: dict[str, Any]) -> WorkspaceStorageSnapshot:
        workspace_id = validate_workspace_id(workspace_id)
        provider = normalize_provider(provider)
        # Construction validates the config shape; nothing is read or written.
        self._backend_factory(provider, config).close()

        with write_lock(), self._session_factory() as session:
            active = session.scalar(
                select(MigrationJob.id).where(
                    MigrationJob.workspace_id == workspace_id,
                    MigrationJob.status.in_(ACTIVE_MIGRATION_STATUSES),
                    MigrationJob.discarded_at.is_(None),
                )
            )
            if active is not None:
                raise WorkspaceStorageLockedError(
                    f"Workspace {workspace_id} has an active migration ({active}); storage changes go through cutover"
                )

            now = self._now()
            row = session.get(WorkspaceStorage, workspace_id)
            if row is None:
                row = WorkspaceStorage(workspace_id=workspace_id, created_at=now)
                session.add(row)
            row.provider = provider
            row.config = self._cipher.encrypt(config)
            row.config_fingerprint = config_fingerprint(provider, config)
            row.updated_at = now
            session.commit()
            session.refresh(row)
            logger.info(
                "Configured %s storage for workspace %s: %s",
                provider,
                workspace_id,
                redact_config(config),
            )
            return self._to_snapshot(row)

    def _to_snapshot(self, row: WorkspaceStorage) -> WorkspaceStorageSnapshot:
        return WorkspaceStorageSnapshot(
            workspace_id=row.workspace_id,
            provider=row.provider,
            config=redact_config(self._cipher.decrypt(row.config)),
            config_fingerprint=row.config_fingerprint,
            active_job_id=row.active_job_id,
            created_at=self._coerce_utc(row.created_at),
            updated_at=self._coerce_utc(row.updated_at),
        )
