from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

import storeshift.db.session as db_session_module
from storeshift.core.config import get_settings
from storeshift.core.secrets import ConfigCipher
from storeshift.db.init_db import initialize_database
from storeshift.db.models import ControlRequest, FileStatus, MigrationJob, MigrationStatus
from storeshift.migration.errors import InvalidMigrationStateError, JobAlreadyActiveError, MigrationNotFoundError
from storeshift.migration.store import MigrationJobStore
from storeshift.migration.types import FileOutcome, MigrationOptions
from storeshift.storage.base import ObjectInfo

WORKSPACE = "ws-store"


def setup_env(tmp_path: Path, **overrides: str) -> MigrationJobStore:
    for name in [key for key in os.environ if key.startswith("STORESHIFT_")]:
        del os.environ[name]
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STORESHIFT_STATE_ROOT"] = state_root.as_posix()
    os.environ["STORESHIFT_MIGRATION_LEASE_TTL_SECONDS"] = "30"
    for name, value in overrides.items():
        os.environ[f"STORESHIFT_{name.upper()}"] = value

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    settings = get_settings()
    return MigrationJobStore(settings, db_session_module.get_session_factory(), ConfigCipher(settings))


def create_job(store: MigrationJobStore, workspace_id: str = WORKSPACE, owner_id: str = "owner-a"):
    return store.create_job(
        workspace_id=workspace_id,
        source_provider="s3",
        source_config={"bucket": "src", "secret_access_key": "hunter2"},
        target_provider="memory",
        target_config={"bucket": "dst"},
        options=MigrationOptions(concurrency=4),
        owner_id=owner_id,
    )


def start_job(store: MigrationJobStore, paths: list[str], owner_id: str = "owner-a") -> str:
    snapshot = create_job(store, owner_id=owner_id)
    store.add_manifest_batch(snapshot.id, [ObjectInfo(path=path, size_bytes=10) for path in paths])
    store.mark_manifest_complete(snapshot.id)
    store.transition(snapshot.id, MigrationStatus.IN_PROGRESS, owner_id=owner_id)
    return snapshot.id


def test_concurrent_workers_never_claim_the_same_record(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    job_id = start_job(store, [f"file-{index:03d}" for index in range(200)])
    barrier = threading.Barrier(8)
    claimed: list[str] = []
    lock = threading.Lock()

    def drain() -> None:
        barrier.wait(timeout=5)
        while True:
            item = store.claim_next(job_id)
            if item is None:
                return
            with lock:
                claimed.append(item.path)

    threads = [threading.Thread(target=drain) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(claimed) == 200
    assert len(set(claimed)) == 200
    assert store.count_files_by_status(job_id)[FileStatus.COPYING] == 200


def test_concurrent_job_creation_allows_only_one_active_job(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    barrier = threading.Barrier(4)
    created_ids: list[str] = []
    conflicts: list[str] = []
    lock = threading.Lock()

    def create() -> None:
        try:
            barrier.wait(timeout=5)
            snapshot = create_job(store)
            with lock:
                created_ids.append(snapshot.id)
        except JobAlreadyActiveError:
            with lock:
                conflicts.append("conflict")

    threads = [threading.Thread(target=create) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(created_ids) == 1
    assert len(conflicts) == 3


def test_partial_unique_index_rejects_second_active_job_written_directly(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    existing = create_job(store)

    with db_session_module.get_session_factory()() as session:
        row = session.get(MigrationJob, existing.id)
        duplicate = MigrationJob(
            id="duplicate-job",
            workspace_id=WORKSPACE,
            status=MigrationStatus.PAUSED,
            source_provider=row.source_provider,
            source_config=row.source_config,
            target_provider=row.target_provider,
            target_config=row.target_config,
            target_fingerprint=row.target_fingerprint,
            options={},
        )
        session.add(duplicate)
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    other_workspace = create_job(store, workspace_id="ws-other")
    assert other_workspace.status == MigrationStatus.PENDING


def test_terminal_job_frees_the_workspace(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    first = create_job(store)
    store.transition(first.id, MigrationStatus.CANCELLED)

    second = create_job(store)

    assert second.id != first.id
    assert store.get_active_job(WORKSPACE).id == second.id


def test_illegal_transitions_are_rejected(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    snapshot = create_job(store)

    with pytest.raises(InvalidMigrationStateError):
        store.transition(snapshot.id, MigrationStatus.COMPLETED)
    with pytest.raises(InvalidMigrationStateError):
        store.transition(snapshot.id, MigrationStatus.PAUSED)

    store.transition(snapshot.id, MigrationStatus.IN_PROGRESS, owner_id="owner-a")
    completed = store.transition(snapshot.id, MigrationStatus.COMPLETED)

    assert completed.completed_at is not None
    for target in MigrationStatus:
        with pytest.raises(InvalidMigrationStateError):
            store.transition(snapshot.id, target)
    with pytest.raises(MigrationNotFoundError):
        store.get_job("missing")


def test_transition_refuses_writer_that_does_not_own_the_job(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    job_id = start_job(store, ["a"], owner_id="owner-a")

    with pytest.raises(InvalidMigrationStateError):
        store.transition(job_id, MigrationStatus.COMPLETED, expected_owner="owner-b")
    assert store.get_status(job_id) == MigrationStatus.IN_PROGRESS


def test_manifest_batches_accumulate_totals_and_skip_duplicates(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    snapshot = create_job(store)

    store.add_manifest_batch(snapshot.id, [ObjectInfo("a", 5), ObjectInfo("b", 7), ObjectInfo("a", 5)])
    store.add_manifest_batch(snapshot.id, [ObjectInfo("c", 0)])
    with pytest.raises(InvalidMigrationStateError):
        store.add_manifest_batch(snapshot.id, [ObjectInfo("b", 7)])
    complete = store.mark_manifest_complete(snapshot.id)

    assert complete.total_files == 3
    assert complete.total_bytes == 12
    assert complete.skipped_files == 1
    assert complete.manifest_complete is True
    assert complete.estimated_completion_at is not None

    store.reset_manifest(snapshot.id)
    reset = store.get_job(snapshot.id)
    assert reset.total_files == 0
    assert reset.manifest_complete is False


def test_file_outcomes_update_counters_once_per_claim(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    job_id = start_job(store, ["a", "b"])
    first = store.claim_next(job_id)
    second = store.claim_next(job_id)

    assert store.apply_file_outcome(
        FileOutcome(claimed=first, status=FileStatus.VERIFIED, attempts=1, source_checksum="x", target_checksum="x")
    )
    assert not store.apply_file_outcome(FileOutcome(claimed=first, status=FileStatus.VERIFIED, attempts=1))
    assert store.apply_file_outcome(
        FileOutcome(claimed=second, status=FileStatus.FAILED, attempts=3, error_kind="TransientIOError", error_message="reset")
    )
    snapshot = store.get_job(job_id)

    assert snapshot.migrated_files == 1
    assert snapshot.migrated_bytes == 10
    assert snapshot.failed_files == 1
    assert snapshot.current_file == "b"
    assert [(entry.path, entry.error_kind, entry.attempt) for entry in snapshot.errors] == [("b", "TransientIOError", 3)]
    with pytest.raises(ValueError):
        store.apply_file_outcome(FileOutcome(claimed=first, status=FileStatus.PENDING, attempts=1))


def test_threshold_failure_count_skips_vanished_objects(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    job_id = start_job(store, ["a", "b", "c"])
    kinds = {"a": "ObjectNotFoundError", "b": "ChecksumMismatchError", "c": "ObjectNotFoundError"}
    for _ in range(3):
        claimed = store.claim_next(job_id)
        store.apply_file_outcome(
            FileOutcome(claimed=claimed, status=FileStatus.FAILED, attempts=1, error_kind=kinds[claimed.path])
        )

    assert store.get_job(job_id).failed_files == 3
    assert store.count_threshold_failures(job_id) == 1


def test_requeued_claim_cannot_be_completed_by_its_old_holder(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    job_id = start_job(store, ["a"])
    stale = store.claim_next(job_id)

    assert store.requeue_in_flight(job_id) == 1
    fresh = store.claim_next(job_id)

    assert fresh.claim_token != stale.claim_token
    assert not store.apply_file_outcome(FileOutcome(claimed=stale, status=FileStatus.VERIFIED, attempts=1))
    assert store.apply_file_outcome(FileOutcome(claimed=fresh, status=FileStatus.VERIFIED, attempts=1))
    assert store.get_job(job_id).migrated_files == 1


def test_release_claim_keeps_attempt_count(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    job_id = start_job(store, ["a"])
    claimed = store.claim_next(job_id)

    assert store.release_claim(claimed, attempts=2, last_error="throttled")
    again = store.claim_next(job_id)

    assert again.attempts == 2
    [record] = store.list_file_records(job_id).items
    assert record.last_error == "throttled"


def test_control_requests_never_downgrade_cancel(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    job_id = start_job(store, ["a"])

    store.set_control_request(job_id, ControlRequest.PAUSE)
    assert store.renew_lease(job_id, "owner-a") == ControlRequest.PAUSE
    store.set_control_request(job_id, ControlRequest.CANCEL)
    store.set_control_request(job_id, ControlRequest.PAUSE)

    assert store.renew_lease(job_id, "owner-a") == ControlRequest.CANCEL
    with pytest.raises(InvalidMigrationStateError):
        store.renew_lease(job_id, "owner-b")


def test_pending_cancel_request_survives_start_of_copy_phase(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    snapshot = create_job(store)

    store.set_control_request(snapshot.id, ControlRequest.CANCEL)
    store.transition(snapshot.id, MigrationStatus.IN_PROGRESS, owner_id="owner-a")

    assert store.renew_lease(snapshot.id, "owner-a") == ControlRequest.CANCEL


def test_prepare_resume_requeues_copying_and_optionally_failed_records(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    job_id = start_job(store, ["a", "b", "c"])
    failed = store.claim_next(job_id)
    store.apply_file_outcome(FileOutcome(claimed=failed, status=FileStatus.FAILED, attempts=3, error_kind="X"))
    store.claim_next(job_id)
    store.transition(job_id, MigrationStatus.FAILED, error_code="LeaseLost")

    resumed = store.prepare_resume(job_id, owner_id="owner-b", reset_failed=True)
    counts = store.count_files_by_status(job_id)

    assert resumed.status == MigrationStatus.IN_PROGRESS
    assert resumed.owner_id == "owner-b"
    assert resumed.error_code is None
    assert resumed.failed_files == 0
    assert counts[FileStatus.PENDING] == 3
    assert store.claim_next(job_id).attempts == 0


def test_snapshots_redact_backend_secrets_but_store_them_encrypted(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    snapshot = create_job(store)

    with db_session_module.get_session_factory()() as session:
        raw = session.scalar(select(MigrationJob.source_config).where(MigrationJob.id == snapshot.id))

    assert snapshot.source_config == {"bucket": "src", "secret_access_key": "***"}
    assert "hunter2" not in raw
    assert store.load_backend_configs(snapshot.id)[1]["secret_access_key"] == "hunter2"


def test_list_jobs_pages_newest_first(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    created: list[str] = []
    for _ in range(5):
        snapshot = create_job(store)
        store.transition(snapshot.id, MigrationStatus.CANCELLED)
        created.append(snapshot.id)

    first_page = store.list_jobs(WORKSPACE, limit=2)
    second_page = store.list_jobs(WORKSPACE, limit=2, cursor=first_page.next_cursor)
    third_page = store.list_jobs(WORKSPACE, limit=2, cursor=second_page.next_cursor)

    seen = [job.id for job in first_page.items + second_page.items + third_page.items]
    assert sorted(seen) == sorted(created)
    assert len(set(seen)) == 5
    assert third_page.next_cursor is None
    with pytest.raises(ValueError):
        store.list_jobs(WORKSPACE, cursor="not-a-job")


def test_list_file_records_filters_by_status_and_pages_by_id(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    job_id = start_job(store, [f"f{index}" for index in range(5)])
    done = store.claim_next(job_id)
    store.apply_file_outcome(FileOutcome(claimed=done, status=FileStatus.VERIFIED, attempts=1))

    page = store.list_file_records(job_id, limit=2)
    rest = store.list_file_records(job_id, limit=10, cursor=page.next_cursor)
    verified = store.list_file_records(job_id, status=FileStatus.VERIFIED)

    assert [record.path for record in page.items] == ["f0", "f1"]
    assert [record.path for record in rest.items] == ["f2", "f3", "f4"]
    assert rest.next_cursor is None
    assert [record.path for record in verified.items] == ["f0"]
