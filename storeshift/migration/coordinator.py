from __future__ import annotations

import logging
import os
import socket
import threading
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from storeshift.core.config import Settings
from storeshift.core.logging import redact_config
from storeshift.core.path_safety import PathSafetyError, validate_object_key
from storeshift.core.secrets import ConfigCipher, config_fingerprint
from storeshift.db.models import ControlRequest, FileStatus, MigrationStatus
from storeshift.migration.cancellation import CancellationToken, StopReason
from storeshift.migration.cutover import CutoverManager
from storeshift.migration.errors import InvalidMigrationStateError, MigrationPolicyError
from storeshift.migration.progress import ProgressListener, ProgressTracker
from storeshift.migration.retry import RetryPolicy
from storeshift.migration.scope import ScopeCalculator
from storeshift.migration.store import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, MigrationJobStore
from storeshift.migration.types import (
    CutoverResult,
    FileRecordListResult,
    JobListResult,
    MigrationJobSnapshot,
    MigrationOptions,
    MigrationScope,
)
from storeshift.migration.worker import CopyVerifyWorker, WorkerPool
from storeshift.storage.base import StorageBackend
from storeshift.storage.errors import StorageError
from storeshift.storage.registry import create_backend, normalize_provider
from storeshift.workspaces.service import BackendFactory, WorkspaceStorageService, validate_workspace_id

logger = logging.getLogger(__name__)

_RUN_FRESH = "fresh"
_RUN_CONTINUE = "continue"


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


@dataclass
class _JobRun:
    job_id: str
    token: CancellationToken
    thread: threading.Thread | None = None
    keeper: _LeaseKeeper | None = None
    done: threading.Event = field(default_factory=threading.Event)


class _LeaseKeeper(threading.Thread):
    """Renews the owner lease and relays persisted cancel/pause requests to the token."""

    def __init__(self, store: MigrationJobStore, job_id: str, owner_id: str, token: CancellationToken, interval: float):
        super().__init__(name=f"lease-{job_id[:8]}", daemon=True)
        self._store = store
        self._job_id = job_id
        self._owner_id = owner_id
        self._token = token
        self._interval = interval
        self._stopped = threading.Event()

    def stop(self) -> None:
        self._stopped.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=self._interval * 2)

    def run(self) -> None:
        while not self._stopped.is_set():
            try:
                request = self._store.renew_lease(self._job_id, self._owner_id)
            except InvalidMigrationStateError as exc:
                if self._stopped.is_set():
                    return
                logger.error("Lost ownership of migration %s: %s", self._job_id, exc)
                self._token.abort("LeaseLost", str(exc))
                return
            except SQLAlchemyError as exc:
                logger.warning("Lease renewal for migration %s failed: %s", self._job_id, exc)
            else:
                if request == ControlRequest.CANCEL:
                    self._token.request(StopReason.CANCEL)
                elif request == ControlRequest.PAUSE:
                    self._token.request(StopReason.PAUSE)
            self._stopped.wait(self._interval)


class MigrationCoordinator:
    """Owns the lifecycle of migration jobs in this process.

    Each active job gets one supervisor thread that builds the manifest,
    fans out to a bounded worker pool and writes the terminal status. All
    durable state lives in the job store, so another process can pick up a
    job whose owner lease has expired.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        backend_factory: BackendFactory = create_backend,
        owner_id: str | None = None,
    ):
        self._settings = settings
        self._backend_factory = backend_factory
        self.owner_id = owner_id or default_owner_id()
        cipher = ConfigCipher(settings)
        self._store = MigrationJobStore(settings, session_factory, cipher)
        self._workspaces = WorkspaceStorageService(settings, session_factory, cipher, backend_factory=backend_factory)
        self._scope = ScopeCalculator(settings, self._store)
        self._cutover = CutoverManager(settings, session_factory, cipher)
        self._runs: dict[str, _JobRun] = {}
        self._runs_lock = threading.Lock()
        self._listeners: dict[str, list[ProgressListener]] = defaultdict(list)

    @property
    def store(self) -> MigrationJobStore:
        return self._store

    @property
    def workspaces(self) -> WorkspaceStorageService:
        return self._workspaces

    def _normalize_prefix(self, prefix: str | None) -> str | None:
        if prefix is None or not prefix.strip():
            return None
        raw = prefix.strip().lstrip("/")
        try:
            validate_object_key(raw.rstrip("/") or raw)
        except PathSafetyError as exc:
            raise MigrationPolicyError(f"Invalid filter prefix: {exc}") from exc
        return raw

    def _resolve_options(self, options: MigrationOptions | None) -> MigrationOptions:
        options = options or MigrationOptions()
        concurrency = options.concurrency or self._settings.migration_default_concurrency
        if concurrency < 1 or concurrency > self._settings.migration_max_concurrency:
            raise MigrationPolicyError(
                f"concurrency must be between 1 and {self._settings.migration_max_concurrency}"
            )
        max_attempts = options.max_attempts or self._settings.migration_max_attempts
        if max_attempts < 1:
            raise MigrationPolicyError("max_attempts must be at least 1")
        return replace(
            options,
            concurrency=concurrency,
            max_attempts=max_attempts,
            filter_prefix=self._normalize_prefix(options.filter_prefix),
        )

    def calculate_scope(self, workspace_id: str, filter_prefix: str | None = None) -> MigrationScope:
        backend = self._workspaces.open_active_backend(workspace_id)
        try:
            return self._scope.calculate(backend, self._normalize_prefix(filter_prefix))
        finally:
            backend.close()

    def start_migration(
        self,
        workspace_id: str,
        target_provider: str,
        target_config: dict[str, Any],
        options: MigrationOptions | None = None,
    ) -> str:
        workspace_id = validate_workspace_id(workspace_id)
        resolved = self._resolve_options(options)
        target_provider = normalize_provider(target_provider)
        source_provider, source_config = self._workspaces.get_active_config(workspace_id)
        if config_fingerprint(source_provider, source_config) == config_fingerprint(target_provider, target_config):
            raise MigrationPolicyError("Target backend is already the workspace's active backend")

        target = self._backend_factory(target_provider, target_config)
        try:
            if not target.test_connection():
                raise MigrationPolicyError(f"Target {target_provider} backend is not reachable")
        finally:
            target.close()

        snapshot = self._store.create_job(
            workspace_id=workspace_id,
            source_provider=source_provider,
            source_config=source_config,
            target_provider=target_provider,
            target_config=target_config,
            options=resolved,
            owner_id=self.owner_id,
        )
        logger.info(
            "Migration %s created for workspace %s: %s -> %s %s (concurrency=%d, verify=%s, continue_on_error=%s)",
            snapshot.id,
            workspace_id,
            source_provider,
            target_provider,
            redact_config(target_config),
            resolved.concurrency,
            resolved.verify_integrity,
            resolved.continue_on_error,
        )
        self._launch(snapshot.id, _RUN_FRESH)
        return snapshot.id

    def get_progress(self, job_id: str) -> MigrationJobSnapshot:
        return self._store.get_job(job_id)

    def get_current_job(self, workspace_id: str) -> MigrationJobSnapshot | None:
        active = self._store.get_active_job(workspace_id)
        if active is not None:
            return active
        return self._store.get_latest_job(workspace_id)

    def list_jobs(
        self,
        workspace_id: str,
        *,
        limit: int = 50,
        cursor: str | None = None,
        include_discarded: bool = False,
    ) -> JobListResult:
        return self._store.list_jobs(workspace_id, limit=limit, cursor=cursor, include_discarded=include_discarded)

    def list_file_records(
        self,
        job_id: str,
        *,
        status: FileStatus | None = None,
        limit: int = 100,
        cursor: int | None = None,
    ) -> FileRecordListResult:
        return self._store.list_file_records(job_id, status=status, limit=limit, cursor=cursor)

    def subscribe(self, job_id: str, listener: ProgressListener) -> Callable[[], None]:
        listeners = self._listeners[job_id]
        listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    def _local_run(self, job_id: str) -> _JobRun | None:
        with self._runs_lock:
            return self._runs.get(job_id)

    def _stop_orphan(self, job_id: str, to_status: MigrationStatus) -> MigrationJobSnapshot | None:
        """Apply a stop directly when no live process owns the job."""
        if not self._store.is_lease_expired(job_id):
            return None
        if not self._store.claim_orphan(job_id, self.owner_id):
            return None
        self._store.requeue_in_flight(job_id)
        return self._store.transition(job_id, to_status, expected_owner=self.owner_id)

    def cancel_migration(self, job_id: str) -> MigrationJobSnapshot:
        snapshot = self._store.get_job(job_id)
        if snapshot.status == MigrationStatus.CANCELLED:
            return snapshot
        if snapshot.status in TERMINAL_STATUSES:
            raise InvalidMigrationStateError(f"Migration {job_id} is already {snapshot.status.value}")
        if snapshot.status == MigrationStatus.PAUSED:
            logger.info("Cancelling paused migration %s", job_id)
            return self._store.transition(job_id, MigrationStatus.CANCELLED)

        run = self._local_run(job_id)
        if run is not None:
            run.token.request(StopReason.CANCEL)
        snapshot = self._store.set_control_request(job_id, ControlRequest.CANCEL)
        if run is None:
            stopped = self._stop_orphan(job_id, MigrationStatus.CANCELLED)
            if stopped is not None:
                return stopped
        logger.info("Cancellation requested for migration %s", job_id)
        return snapshot

    def pause_migration(self, job_id: str) -> MigrationJobSnapshot:
        snapshot = self._store.get_job(job_id)
        if snapshot.status == MigrationStatus.PAUSED:
            return snapshot
        if snapshot.status != MigrationStatus.IN_PROGRESS:
            raise InvalidMigrationStateError(f"Only in-progress migrations can be paused, {job_id} is {snapshot.status.value}")

        run = self._local_run(job_id)
        if run is not None:
            run.token.request(StopReason.PAUSE)
        snapshot = self._store.set_control_request(job_id, ControlRequest.PAUSE)
        if run is None:
            stopped = self._stop_orphan(job_id, MigrationStatus.PAUSED)
            if stopped is not None:
                return stopped
        logger.info("Pause requested for migration %s", job_id)
        return snapshot

    def resume_migration(self, job_id: str, *, reset_failed: bool = False) -> MigrationJobSnapshot:
        if self._local_run(job_id) is not None:
            raise InvalidMigrationStateError(f"Migration {job_id} is still winding down; retry shortly")
        snapshot = self._store.prepare_resume(job_id, owner_id=self.owner_id, reset_failed=reset_failed)
        logger.info(
            "Resuming migration %s: %d of %d files already verified",
            job_id,
            snapshot.migrated_files,
            snapshot.total_files,
        )
        self._launch(job_id, _RUN_CONTINUE)
        return snapshot

    def discard_migration(self, job_id: str) -> MigrationJobSnapshot:
        snapshot = self._store.discard(job_id)
        self._listeners.pop(job_id, None)
        logger.info("Migration %s discarded", job_id)
        return snapshot

    def complete_migration(
        self,
        workspace_id: str,
        target_provider: str,
        target_config: dict[str, Any],
        *,
        override: bool = False,
    ) -> CutoverResult:
        return self._cutover.complete(workspace_id, target_provider, target_config, override=override)

    def recover_orphaned_jobs(self) -> list[str]:
        """Take over jobs whose owner lease expired and resume them from their records."""
        recovered: list[str] = []
        for job_id in self._store.find_orphaned_jobs():
            if self._local_run(job_id) is not None:
                continue
            if not self._store.claim_orphan(job_id, self.owner_id):
                continue
            if self._store.get_status(job_id) == MigrationStatus.PENDING:
                # The manifest may be partial; rebuild it from a fresh listing.
                self._store.reset_manifest(job_id)
                mode = _RUN_FRESH
            else:
                requeued = self._store.requeue_in_flight(job_id)
                logger.info("Requeued %d in-flight files of orphaned migration %s", requeued, job_id)
                mode = _RUN_CONTINUE
            logger.warning("Recovering orphaned migration %s", job_id)
            self._launch(job_id, mode)
            recovered.append(job_id)
        return recovered

    def wait_for(self, job_id: str, timeout: float | None = None) -> MigrationJobSnapshot:
        """Block until the job's supervisor in this process exits, or poll the store if it runs elsewhere."""
        run = self._local_run(job_id)
        if run is not None:
            run.done.wait(timeout)
            return self._store.get_job(job_id)
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            snapshot = self._store.get_job(job_id)
            if snapshot.status in TERMINAL_STATUSES or snapshot.status == MigrationStatus.PAUSED:
                return snapshot
            if deadline is not None and time.monotonic() >= deadline:
                return snapshot
            time.sleep(0.05)

    def _launch(self, job_id: str, mode: str) -> None:
        run = _JobRun(job_id=job_id, token=CancellationToken())
        run.thread = threading.Thread(
            target=self._run,
            args=(run, mode),
            name=f"migration-{job_id[:8]}",
            daemon=True,
        )
        with self._runs_lock:
            self._runs[job_id] = run
        run.thread.start()

    def _open_backends(self, job_id: str) -> tuple[StorageBackend, StorageBackend]:
        source_provider, source_config, target_provider, target_config = self._store.load_backend_configs(job_id)
        source = self._backend_factory(source_provider, source_config)
        try:
            target = self._backend_factory(target_provider, target_config)
        except Exception:
            source.close()
            raise
        return source, target

    def _run(self, run: _JobRun, mode: str) -> None:
        job_id = run.job_id
        run.keeper = _LeaseKeeper(
            self._store, job_id, self.owner_id, run.token, self._settings.migration_heartbeat_seconds
        )
        run.keeper.start()
        source: StorageBackend | None = None
        target: StorageBackend | None = None
        try:
            source, target = self._open_backends(job_id)
            if mode == _RUN_FRESH and not self._build_manifest(run, source):
                return
            self._supervise(run, source, target)
        except Exception as exc:
            logger.exception("Migration %s supervisor failed", job_id)
            self._stop_keeper(run)
            self._fail_after_crash(job_id, exc)
        finally:
            self._stop_keeper(run)
            for backend in (source, target):
                if backend is not None:
                    backend.close()
            self._release_listeners(job_id)
            with self._runs_lock:
                self._runs.pop(job_id, None)
            run.done.set()

    def _release_listeners(self, job_id: str) -> None:
        # Paused jobs keep their subscribers for the next run.
        try:
            status = self._store.get_status(job_id)
        except SQLAlchemyError as exc:
            logger.warning("Could not read status of migration %s: %s", job_id, exc)
            return
        if status in TERMINAL_STATUSES:
            self._listeners.pop(job_id, None)

    def _stop_keeper(self, run: _JobRun) -> None:
        # Must run before any terminal status write.
        if run.keeper is not None:
            run.keeper.stop()

    def _build_manifest(self, run: _JobRun, source: StorageBackend) -> bool:
        job_id = run.job_id
        prefix = self._store.get_job(job_id).filter_prefix
        try:
            manifest = self._scope.snapshot_manifest(job_id, source, prefix, run.token)
        except StorageError as exc:
            logger.error("Listing source for migration %s failed: %s", job_id, exc)
            self._stop_keeper(run)
            self._store.record_job_error(job_id, error_kind=exc.error_kind, message=str(exc), path=exc.path)
            self._store.transition(
                job_id,
                MigrationStatus.FAILED,
                expected_owner=self.owner_id,
                error_code=exc.error_kind,
                error_message=str(exc),
            )
            return False

        if manifest is None:
            self._stop_keeper(run)
            reason = run.token.reason
            if reason == StopReason.ABORT:
                self._store.transition(
                    job_id,
                    MigrationStatus.FAILED,
                    expected_owner=self.owner_id,
                    error_code=run.token.error_kind,
                    error_message=run.token.detail,
                )
            else:
                self._store.transition(job_id, MigrationStatus.CANCELLED, expected_owner=self.owner_id)
            logger.info("Migration %s stopped while building its manifest", job_id)
            return False

        self._store.transition(job_id, MigrationStatus.IN_PROGRESS, owner_id=self.owner_id, expected_owner=self.owner_id)
        return True

    def _supervise(self, run: _JobRun, source: StorageBackend, target: StorageBackend) -> None:
        job_id = run.job_id
        snapshot = self._store.get_job(job_id)
        options = MigrationOptions.from_dict(snapshot.options)
        concurrency = options.concurrency or self._settings.migration_default_concurrency
        compute_checksums = options.verify_integrity or self._settings.migration_verify_computes_checksums
        algorithm = self._settings.checksum_algorithm if compute_checksums else None
        failure_limit = None if options.continue_on_error else self._settings.migration_failure_abort_threshold
        counted_failures = self._store.count_threshold_failures(job_id) if failure_limit is not None else 0

        tracker = ProgressTracker(
            self._store,
            snapshot,
            assumed_bytes_per_sec=self._settings.migration_assumed_throughput_bytes_per_sec,
            token=run.token,
            failure_limit=failure_limit,
            counted_failures=counted_failures,
            listeners=self._listeners[job_id],
        )
        if failure_limit is not None and counted_failures > failure_limit:
            run.token.abort(
                "FailureThresholdExceeded",
                f"{counted_failures} files failed, limit is {failure_limit}",
            )
        policy = RetryPolicy.from_settings(self._settings, max_attempts=options.max_attempts)
        workers = [
            CopyVerifyWorker(
                job_id=job_id,
                store=self._store,
                source=source,
                target=target,
                tracker=tracker,
                token=run.token,
                retry_policy=policy,
                verify_integrity=options.verify_integrity,
                checksum_algorithm=algorithm,
                chunk_size=self._settings.migration_stream_chunk_bytes,
                name=f"worker-{index}",
            )
            for index in range(concurrency)
        ]
        started = time.monotonic()
        processed = WorkerPool(job_id, run.token).run(workers)
        self._store.requeue_in_flight(job_id)
        self._finish(run, processed, time.monotonic() - started, tracker.throughput_bytes_per_sec)

    def _finish(self, run: _JobRun, processed: int, elapsed: float, throughput: float) -> None:
        job_id = run.job_id
        self._stop_keeper(run)
        reason = run.token.reason
        if reason == StopReason.ABORT:
            final = self._store.transition(
                job_id,
                MigrationStatus.FAILED,
                expected_owner=self.owner_id,
                error_code=run.token.error_kind,
                error_message=run.token.detail,
            )
        elif reason == StopReason.CANCEL:
            final = self._store.transition(job_id, MigrationStatus.CANCELLED, expected_owner=self.owner_id)
        elif reason == StopReason.PAUSE:
            final = self._store.transition(job_id, MigrationStatus.PAUSED, expected_owner=self.owner_id)
        else:
            counts = self._store.count_files_by_status(job_id)
            unfinished = counts[FileStatus.PENDING] + counts[FileStatus.COPYING]
            if unfinished:
                final = self._store.transition(
                    job_id,
                    MigrationStatus.FAILED,
                    expected_owner=self.owner_id,
                    error_code="IncompleteRun",
                    error_message=f"{unfinished} files were left unprocessed",
                )
            else:
                final = self._store.transition(job_id, MigrationStatus.COMPLETED, expected_owner=self.owner_id)
        logger.info(
            "Migration %s finished as %s: %d processed this run in %.1fs (%.0f B/s), %d/%d verified, %d failed",
            job_id,
            final.status.value,
            processed,
            elapsed,
            throughput,
            final.migrated_files,
            final.total_files,
            final.failed_files,
        )

    def _fail_after_crash(self, job_id: str, exc: Exception) -> None:
        try:
            status = self._store.get_status(job_id)
            if MigrationStatus.FAILED in ALLOWED_TRANSITIONS[status]:
                self._store.requeue_in_flight(job_id)
                self._store.transition(
                    job_id,
                    MigrationStatus.FAILED,
                    expected_owner=self.owner_id,
                    error_code="InternalError",
                    error_message=str(exc),
                )
        except (SQLAlchemyError, InvalidMigrationStateError) as nested:
            logger.error("Could not mark migration %s failed: %s", job_id, nested)
