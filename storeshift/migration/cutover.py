from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from storeshift.core.config import Settings
from storeshift.core.secrets import ConfigCipher, config_fingerprint
from storeshift.db.models import MigrationJob, MigrationStatus, WorkspaceStorage
from storeshift.db.session import write_lock
from storeshift.migration.errors import CutoverRejectedError
from storeshift.migration.types import CutoverResult
from storeshift.storage.registry import normalize_provider

logger = logging.getLogger(__name__)

_OVERRIDABLE_STATUSES = {MigrationStatus.FAILED, MigrationStatus.CANCELLED}


class CutoverManager:
    """Second phase of a migration: point the workspace at the new backend.

    The config write and the job's ``cutover_at`` stamp share one transaction.
    A retry after a crash sees the matching fingerprint and returns success
    without writing again. Source data is never touched here.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session], cipher: ConfigCipher):
        self._settings = settings
        self._session_factory = session_factory
        self._cipher = cipher

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def complete(
        self,
        workspace_id: str,
        target_provider: str,
        target_config: dict[str, Any],
        *,
        override: bool = False,
    ) -> CutoverResult:
        provider = normalize_provider(target_provider)
        fingerprint = config_fingerprint(provider, target_config)

        with write_lock(), self._session_factory() as session:
            storage = session.get(WorkspaceStorage, workspace_id)
            already_active = storage is not None and storage.config_fingerprint == fingerprint
            job = session.scalar(
                select(MigrationJob)
                .where(MigrationJob.workspace_id == workspace_id, MigrationJob.discarded_at.is_(None))
                .order_by(MigrationJob.created_at.desc(), MigrationJob.id.desc())
                .limit(1)
            )

            if job is None or job.target_fingerprint != fingerprint:
                if already_active:
                    return CutoverResult(success=True, already_switched=True, job_id=storage.active_job_id)
                if job is None:
                    raise CutoverRejectedError(f"Workspace {workspace_id} has no migration to complete")
                raise CutoverRejectedError("Requested target does not match the latest migration's target")

            if job.cutover_at is not None or already_active:
                if job.cutover_at is None:
                    # Config already points at the target; record the stamp the crashed attempt missed.
                    job.cutover_at = self._now()
                    if storage.active_job_id is None:
                        storage.active_job_id = job.id
                    session.commit()
                logger.info("Cutover for workspace %s already applied by migration %s", workspace_id, job.id)
                return CutoverResult(success=True, already_switched=True, job_id=job.id)

            if job.status != MigrationStatus.COMPLETED:
                if not (override and job.status in _OVERRIDABLE_STATUSES):
                    raise CutoverRejectedError(
                        f"Migration {job.id} is {job.status.value}; only completed migrations can be cut over"
                    )
                logger.warning(
                    "Operator override: cutting workspace %s over from %s migration %s",
                    workspace_id,
                    job.status.value,
                    job.id,
                )

            now = self._now()
            if storage is None:
                storage = WorkspaceStorage(workspace_id=workspace_id, created_at=now)
                session.add(storage)
            storage.provider = provider
            storage.config = self._cipher.encrypt(target_config)
            storage.config_fingerprint = fingerprint
            storage.active_job_id = job.id
            storage.updated_at = now
            job.cutover_at = now
            job.updated_at = now
            session.commit()

        logger.info("Workspace %s now uses %s storage (migration %s)", workspace_id, provider, job.id)
        return CutoverResult(success=True, already_switched=False, job_id=job.id)
