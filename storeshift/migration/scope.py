from __future__ import annotations

import logging

from storeshift.core.config import Settings
from storeshift.migration.cancellation import CancellationToken
from storeshift.migration.store import MigrationJobStore
from storeshift.migration.types import MigrationJobSnapshot, MigrationScope
from storeshift.storage.base import ObjectInfo, StorageBackend

logger = logging.getLogger(__name__)


class ScopeCalculator:
    """Pages through a source listing without holding it in memory.

    ``calculate`` is read-only. ``snapshot_manifest`` freezes the listing into
    per-file records for one job; objects created after it runs are not part
    of that job.
    """

    def __init__(self, settings: Settings, store: MigrationJobStore):
        self._settings = settings
        self._store = store

    def estimate_seconds(self, total_bytes: int) -> float:
        return total_bytes / self._settings.migration_assumed_throughput_bytes_per_sec

    def calculate(self, backend: StorageBackend, prefix: str | None = None) -> MigrationScope:
        file_count = 0
        total_bytes = 0
        for page in backend.list(prefix, page_size=self._settings.migration_list_page_size):
            file_count += len(page)
            total_bytes += sum(item.size_bytes for item in page)
        return MigrationScope(
            file_count=file_count,
            total_bytes=total_bytes,
            estimated_duration_seconds=self.estimate_seconds(total_bytes),
        )

    def snapshot_manifest(
        self,
        job_id: str,
        backend: StorageBackend,
        prefix: str | None,
        token: CancellationToken,
    ) -> MigrationJobSnapshot | None:
        """Persist the manifest for ``job_id``; returns None if stopped before the listing ended."""
        batch_size = self._settings.migration_manifest_write_batch_size
        buffer: list[ObjectInfo] = []
        written = 0
        for page in backend.list(prefix, page_size=self._settings.migration_list_page_size):
            if token.is_set:
                logger.info("Manifest listing for migration %s stopped after %d entries", job_id, written)
                return None
            buffer.extend(page)
            if len(buffer) >= batch_size:
                written += self._store.add_manifest_batch(job_id, buffer)
                buffer = []
        if buffer:
            written += self._store.add_manifest_batch(job_id, buffer)
        if token.is_set:
            return None

        snapshot = self._store.mark_manifest_complete(job_id)
        logger.info(
            "Manifest for migration %s captured: %d files, %d bytes",
            job_id,
            snapshot.total_files,
            snapshot.total_bytes,
        )
        return snapshot
