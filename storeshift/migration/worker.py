from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor

from storeshift.db.models import FileStatus
from storeshift.migration.cancellation import CancellationToken
from storeshift.migration.errors import ChecksumMismatchError
from storeshift.migration.progress import ProgressTracker
from storeshift.migration.retry import RetryPolicy
from storeshift.migration.store import MigrationJobStore
from storeshift.migration.types import ClaimedFile, FileOutcome
from storeshift.storage.base import CountingHasher, ObjectStream, StorageBackend
from storeshift.storage.errors import StorageError, TransientIOError

logger = logging.getLogger(__name__)

CopyError = StorageError | ChecksumMismatchError


def _tee(stream: ObjectStream, hashers: list[CountingHasher]) -> Iterator[bytes]:
    for chunk in stream.chunks:
        for hasher in hashers:
            hasher.update(chunk)
        yield chunk


class CopyVerifyWorker:
    def __init__(
        self,
        *,
        job_id: str,
        store: MigrationJobStore,
        source: StorageBackend,
        target: StorageBackend,
        tracker: ProgressTracker,
        token: CancellationToken,
        retry_policy: RetryPolicy,
        verify_integrity: bool,
        checksum_algorithm: str | None,
        chunk_size: int,
        name: str = "worker",
    ):
        self._job_id = job_id
        self._store = store
        self._source = source
        self._target = target
        self._tracker = tracker
        self._token = token
        self._retry_policy = retry_policy
        self._verify_integrity = verify_integrity
        self._checksum_algorithm = checksum_algorithm
        self._chunk_size = chunk_size
        self.name = name

    def run(self) -> int:
        processed = 0
        while not self._token.is_set:
            claimed = self._store.claim_next(self._job_id)
            if claimed is None:
                break
            outcome = self.process(claimed)
            if outcome is None:
                break
            if outcome.fatal:
                self._token.abort(outcome.error_kind or "FatalError", outcome.error_message or "")
            self._tracker.record(outcome)
            processed += 1
        logger.debug("%s for migration %s stopped after %d files", self.name, self._job_id, processed)
        return processed

    def copy_once(self, path: str) -> tuple[str | None, str | None]:
        """Stream one object from source to target; returns (source_checksum, target_checksum)."""
        hasher = CountingHasher(self._checksum_algorithm)
        with self._source.get_object_stream(path, chunk_size=self._chunk_size) as stream:
            hashers = [hasher]
            # Sources may report their own digest (S3 ETag is MD5); hash in that algorithm too.
            reported: CountingHasher | None = None
            if self._verify_integrity and stream.checksum and stream.checksum_algorithm:
                if stream.checksum_algorithm == self._checksum_algorithm:
                    reported = hasher
                else:
                    reported = CountingHasher(stream.checksum_algorithm)
                    hashers.append(reported)
            put = self._target.put_object_stream(
                path,
                _tee(stream, hashers),
                checksum_algorithm=self._checksum_algorithm,
            )
            reported_size = stream.size_bytes
            reported_checksum = stream.checksum
        source = hasher.result()

        if self._verify_integrity:
            if source.size_bytes != put.size_bytes or source.size_bytes != reported_size:
                raise ChecksumMismatchError(
                    f"Size mismatch for {path}: source {reported_size}, read {source.size_bytes}, "
                    f"written {put.size_bytes}",
                    path=path,
                )
            if source.checksum != put.checksum:
                raise ChecksumMismatchError(
                    f"Checksum mismatch for {path}: source {source.checksum}, target {put.checksum}",
                    path=path,
                )
            streamed = reported.result().checksum if reported is not None else None
            if streamed is not None and streamed != reported_checksum:
                raise ChecksumMismatchError(
                    f"Source reported {reported_checksum} for {path} but streamed {streamed}",
                    path=path,
                )
        return source.checksum, put.checksum

    def process(self, claimed: ClaimedFile) -> FileOutcome | None:
        """Copy and verify one claimed record, retrying under the policy.

        Returns None when a stop was requested during backoff; the claim is
        then released back to pending with its attempt count kept.
        """
        attempts = claimed.attempts
        started = time.monotonic()
        while True:
            attempts += 1
            error: CopyError
            try:
                source_checksum, target_checksum = self.copy_once(claimed.path)
                return FileOutcome(
                    claimed=claimed,
                    status=FileStatus.VERIFIED,
                    attempts=attempts,
                    source_checksum=source_checksum,
                    target_checksum=target_checksum,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            except (StorageError, ChecksumMismatchError) as exc:
                error = exc
            except Exception as exc:
                logger.warning("Unclassified error copying %s: %r", claimed.path, exc)
                error = TransientIOError(f"Unclassified error copying {claimed.path}: {exc}", path=claimed.path)

            if error.fatal or not error.retryable or not self._retry_policy.should_retry(attempts):
                if not error.fatal:
                    logger.info("Giving up on %s after %d attempts: %s", claimed.path, attempts, error)
                else:
                    logger.error("Fatal %s on %s: %s", error.error_kind, claimed.path, error)
                return FileOutcome(
                    claimed=claimed,
                    status=FileStatus.FAILED,
                    attempts=attempts,
                    error_kind=error.error_kind,
                    error_message=str(error),
                    duration_ms=int((time.monotonic() - started) * 1000),
                    fatal=error.fatal,
                )

            delay = self._retry_policy.backoff_seconds(attempts)
            logger.info(
                "Retrying %s after %s (attempt %d/%d, backoff %.2fs)",
                claimed.path,
                error.error_kind,
                attempts,
                self._retry_policy.max_attempts,
                delay,
            )
            if self._token.wait(delay):
                self._store.release_claim(claimed, attempts=attempts, last_error=str(error))
                return None


class WorkerPool:
    """Runs a fixed number of workers for one job and waits for all of them."""

    def __init__(self, job_id: str, token: CancellationToken):
        self._job_id = job_id
        self._token = token

    def _run_worker(self, worker: CopyVerifyWorker) -> int:
        try:
            return worker.run()
        except Exception as exc:
            logger.exception("%s crashed in migration %s", worker.name, self._job_id)
            self._token.abort("InternalError", f"{worker.name} crashed: {exc}")
            return 0

    def run(self, workers: list[CopyVerifyWorker]) -> int:
        if not workers:
            return 0
        with ThreadPoolExecutor(max_workers=len(workers), thread_name_prefix=f"migrate-{self._job_id[:8]}") as pool:
            futures = [pool.submit(self._run_worker, worker) for worker in workers]
            return sum(future.result() for future in futures)
