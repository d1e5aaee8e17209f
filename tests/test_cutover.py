from __future__ import annotations

import os
from pathlib import Path

import pytest

import storeshift.db.session as db_session_module
from storeshift.core.config import get_settings
from storeshift.db.init_db import initialize_database
from storeshift.db.models import MigrationStatus
from storeshift.migration.coordinator import MigrationCoordinator
from storeshift.migration.errors import CutoverRejectedError
from storeshift.migration.types import MigrationOptions
from storeshift.worker.pipeline import reset_migration_coordinator
from storeshift.workspaces.service import WorkspaceStorageLockedError

WORKSPACE = "ws-cutover"
SOURCE = {"bucket": "source"}
TARGET = {"bucket": "target", "secret_access_key": "s3cr3t"}


def setup_env(tmp_path: Path) -> None:
    for name in [key for key in os.environ if key.startswith("STORESHIFT_")]:
        del os.environ[name]
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STORESHIFT_STATE_ROOT"] = state_root.as_posix()
    os.environ["STORESHIFT_MIGRATION_RETRY_BASE_SECONDS"] = "0"
    os.environ["STORESHIFT_MIGRATION_RETRY_MAX_SECONDS"] = "0"
    os.environ["STORESHIFT_MIGRATION_HEARTBEAT_SECONDS"] = "0.2"

    get_settings.cache_clear()
    db_session_module.reset_engine()
    reset_migration_coordinator()
    initialize_database()


def make_coordinator(tmp_path: Path, backend_rig) -> MigrationCoordinator:
    setup_env(tmp_path)
    coordinator = MigrationCoordinator(
        get_settings(),
        db_session_module.get_session_factory(),
        backend_factory=backend_rig.factory,
    )
    coordinator.workspaces.configure_storage(WORKSPACE, "memory", SOURCE)
    return coordinator


def finish_job(coordinator: MigrationCoordinator, status: MigrationStatus) -> str:
    store = coordinator.store
    snapshot = store.create_job(
        workspace_id=WORKSPACE,
        source_provider="memory",
        source_config=SOURCE,
        target_provider="memory",
        target_config=TARGET,
        options=MigrationOptions(),
        owner_id=coordinator.owner_id,
    )
    store.transition(snapshot.id, MigrationStatus.IN_PROGRESS, owner_id=coordinator.owner_id)
    store.transition(snapshot.id, status)
    return snapshot.id


def test_complete_migration_switches_backend_once_and_is_idempotent(tmp_path: Path, backend_rig) -> None:
    coordinator = make_coordinator(tmp_path, backend_rig)
    backend_rig.backend("source").seed({"a.bin": b"a", "b.bin": b"b"})
    job_id = coordinator.start_migration(WORKSPACE, "memory", TARGET)
    assert coordinator.wait_for(job_id, timeout=30).status == MigrationStatus.COMPLETED
    puts_before = list(backend_rig.backend("target").put_calls)

    first = coordinator.complete_migration(WORKSPACE, "memory", TARGET)
    second = coordinator.complete_migration(WORKSPACE, "memory", TARGET)

    assert first.success is True
    assert first.already_switched is False
    assert first.job_id == job_id
    assert second.success is True
    assert second.already_switched is True
    assert second.job_id == job_id
    assert backend_rig.backend("target").put_calls == puts_before
    assert coordinator.workspaces.get_active_config(WORKSPACE) == ("memory", TARGET)
    storage = coordinator.workspaces.get_storage(WORKSPACE)
    assert storage.active_job_id == job_id
    assert storage.config == {"bucket": "target", "secret_access_key": "***"}
    assert coordinator.get_progress(job_id).cutover_at is not None
    assert backend_rig.backend("source").keys() == ["a.bin", "b.bin"]


def test_cutover_rejected_until_job_completed_unless_overridden(tmp_path: Path, backend_rig) -> None:
    coordinator = make_coordinator(tmp_path, backend_rig)
    job_id = finish_job(coordinator, MigrationStatus.FAILED)

    with pytest.raises(CutoverRejectedError):
        coordinator.complete_migration(WORKSPACE, "memory", TARGET)
    assert coordinator.workspaces.get_active_config(WORKSPACE) == ("memory", SOURCE)

    result = coordinator.complete_migration(WORKSPACE, "memory", TARGET, override=True)

    assert result.success is True
    assert result.job_id == job_id
    assert coordinator.workspaces.get_active_config(WORKSPACE) == ("memory", TARGET)


def test_cutover_rejects_in_progress_job_even_with_override(tmp_path: Path, backend_rig) -> None:
    coordinator = make_coordinator(tmp_path, backend_rig)
    snapshot = coordinator.store.create_job(
        workspace_id=WORKSPACE,
        source_provider="memory",
        source_config=SOURCE,
        target_provider="memory",
        target_config=TARGET,
        options=MigrationOptions(),
        owner_id=coordinator.owner_id,
    )
    coordinator.store.transition(snapshot.id, MigrationStatus.IN_PROGRESS, owner_id=coordinator.owner_id)

    with pytest.raises(CutoverRejectedError):
        coordinator.complete_migration(WORKSPACE, "memory", TARGET, override=True)


def test_cutover_rejects_target_that_differs_from_migrated_target(tmp_path: Path, backend_rig) -> None:
    coordinator = make_coordinator(tmp_path, backend_rig)
    finish_job(coordinator, MigrationStatus.COMPLETED)

    with pytest.raises(CutoverRejectedError):
        coordinator.complete_migration(WORKSPACE, "memory", {"bucket": "somewhere-else"})
    with pytest.raises(CutoverRejectedError):
        coordinator.complete_migration("ws-without-jobs", "memory", TARGET)


def test_cutover_retry_after_partial_commit_records_missing_stamp(tmp_path: Path, backend_rig) -> None:
    coordinator = make_coordinator(tmp_path, backend_rig)
    job_id = finish_job(coordinator, MigrationStatus.COMPLETED)
    # The workspace already points at the target, as if the stamp write had been lost.
    coordinator.workspaces.configure_storage(WORKSPACE, "memory", TARGET)

    result = coordinator.complete_migration(WORKSPACE, "memory", TARGET)

    assert result.success is True
    assert result.already_switched is True
    assert result.job_id == job_id
    assert coordinator.get_progress(job_id).cutover_at is not None


def test_direct_storage_change_is_refused_while_migration_is_active(tmp_path: Path, backend_rig) -> None:
    coordinator = make_coordinator(tmp_path, backend_rig)
    coordinator.store.create_job(
        workspace_id=WORKSPACE,
        source_provider="memory",
        source_config=SOURCE,
        target_provider="memory",
        target_config=TARGET,
        options=MigrationOptions(),
        owner_id=coordinator.owner_id,
    )

    with pytest.raises(WorkspaceStorageLockedError):
        coordinator.workspaces.configure_storage(WORKSPACE, "memory", TARGET)
    assert coordinator.workspaces.get_active_config(WORKSPACE) == ("memory", SOURCE)
