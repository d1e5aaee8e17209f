from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from storeshift.db.models import FileStatus
from storeshift.migration.cancellation import CancellationToken
from storeshift.migration.store import MigrationJobStore
from storeshift.migration.types import FileOutcome, MigrationJobSnapshot
from storeshift.storage.errors import FAIL_SOFT_ERROR_KINDS

logger = logging.getLogger(__name__)

ProgressListener = Callable[[MigrationJobSnapshot], None]


class ProgressTracker:
    """The only writer of a running job's counters.

    Every file result goes through ``record``: one transaction updates the
    file record and the job counters, and the ETA is re-derived from the
    throughput observed since this run started.
    """

    def __init__(
        self,
        store: MigrationJobStore,
        snapshot: MigrationJobSnapshot,
        *,
        assumed_bytes_per_sec: float,
        token: CancellationToken,
        failure_limit: int | None = None,
        counted_failures: int = 0,
        listeners: list[ProgressListener] | None = None,
    ):
        self._store = store
        self._job_id = snapshot.id
        self._total_bytes = snapshot.total_bytes
        self._migrated_bytes = snapshot.migrated_bytes
        self._counted_failures = counted_failures
        self._assumed_bytes_per_sec = assumed_bytes_per_sec
        self._token = token
        self._failure_limit = failure_limit
        self._listeners = listeners if listeners is not None else []
        self._lock = threading.Lock()
        self._run_started = time.monotonic()
        self._run_bytes = 0

    @property
    def throughput_bytes_per_sec(self) -> float:
        elapsed = time.monotonic() - self._run_started
        if elapsed <= 0 or self._run_bytes <= 0:
            return 0.0
        return self._run_bytes / elapsed

    def _estimate_completion(self, migrated_bytes: int, run_bytes: int) -> datetime:
        elapsed = time.monotonic() - self._run_started
        rate = run_bytes / elapsed if elapsed > 0 and run_bytes > 0 else self._assumed_bytes_per_sec
        remaining = max(0, self._total_bytes - migrated_bytes)
        return datetime.now(tz=timezone.utc) + timedelta(seconds=remaining / rate)

    def record(self, outcome: FileOutcome) -> bool:
        verified = outcome.status == FileStatus.VERIFIED
        with self._lock:
            added = outcome.claimed.size_bytes if verified else 0
            eta = self._estimate_completion(self._migrated_bytes + added, self._run_bytes + added)
            applied = self._store.apply_file_outcome(outcome, estimated_completion_at=eta)
            if not applied:
                logger.warning(
                    "Dropped result for %s in migration %s: claim no longer held",
                    outcome.claimed.path,
                    self._job_id,
                )
                return False
            if verified:
                self._migrated_bytes += added
                self._run_bytes += added
            elif outcome.error_kind not in FAIL_SOFT_ERROR_KINDS:
                self._counted_failures += 1
                if self._failure_limit is not None and self._counted_failures > self._failure_limit:
                    self._token.abort(
                        "FailureThresholdExceeded",
                        f"{self._counted_failures} files failed, limit is {self._failure_limit}",
                    )
        self._notify()
        return True

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self._store.get_job(self._job_id)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Progress listener failed for migration %s", self._job_id)
