from __future__ import annotations

import logging
import threading
from typing import Any

from storeshift.core.config import get_settings
from storeshift.db.session import get_session_factory
from storeshift.migration.coordinator import MigrationCoordinator
from storeshift.migration.types import MigrationOptions

logger = logging.getLogger(__name__)

_coordinator: MigrationCoordinator | None = None
_coordinator_lock = threading.Lock()


def get_migration_coordinator() -> MigrationCoordinator:
    global _coordinator
    with _coordinator_lock:
        if _coordinator is None:
            _coordinator = MigrationCoordinator(settings=get_settings(), session_factory=get_session_factory())
        return _coordinator


def reset_migration_coordinator() -> None:
    global _coordinator
    with _coordinator_lock:
        _coordinator = None


def enqueue_migration(
    workspace_id: str,
    target_provider: str,
    target_config: dict[str, Any],
    *,
    continue_on_error: bool = True,
    concurrency: int | None = None,
    verify_integrity: bool = True,
    filter_prefix: str | None = None,
) -> str:
    options = MigrationOptions(
        continue_on_error=continue_on_error,
        concurrency=concurrency,
        verify_integrity=verify_integrity,
        filter_prefix=filter_prefix,
    )
    return get_migration_coordinator().start_migration(workspace_id, target_provider, target_config, options)


def resume_orphaned_migrations() -> list[str]:
    settings = get_settings()
    if not settings.migration_resume_orphans_on_startup:
        return []
    recovered = get_migration_coordinator().recover_orphaned_jobs()
    if recovered:
        logger.warning("Resumed %d orphaned migrations: %s", len(recovered), ", ".join(recovered))
    return recovered
