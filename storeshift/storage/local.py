from __future__ import annotations

import errno
import logging
import os
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any
from uuid import uuid4

from storeshift.core.path_safety import PathSafetyError, join_key_prefix, resolve_under_root
from storeshift.storage.base import CountingHasher, ObjectInfo, ObjectStream, PutResult, StorageBackend
from storeshift.storage.errors import (
    AuthorizationError,
    BackendConfigError,
    ObjectNotFoundError,
    QuotaExceededError,
    StorageError,
    TransientIOError,
    UnsupportedObjectKeyError,
)

logger = logging.getLogger(__name__)

_PARTIAL_SUFFIX = ".part"
_QUOTA_ERRNOS = {errno.ENOSPC, errno.EDQUOT}
_AUTH_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}


def _classify_os_error(exc: OSError, path: str) -> StorageError:
    if isinstance(exc, FileNotFoundError):
        return ObjectNotFoundError(f"Object not found: {path}", path=path)
    if exc.errno in _QUOTA_ERRNOS:
        return QuotaExceededError(f"Storage is full while writing {path}: {exc}", path=path)
    if exc.errno in _AUTH_ERRNOS:
        return AuthorizationError(f"Permission denied for {path}: {exc}", path=path)
    return TransientIOError(f"I/O error on {path}: {exc}", path=path)


def _is_hidden_artifact(name: str) -> bool:
    return name.startswith(".") and name.endswith(_PARTIAL_SUFFIX)


def _entry_size(full: Path, key: str) -> int | None:
    # Live sources lose files between walk and stat; dangling symlinks never resolve.
    try:
        return full.stat().st_size
    except FileNotFoundError:
        logger.debug("Skipping %s: vanished or dangling while listing", key)
        return None


class LocalStorageBackend(StorageBackend):
    provider = "local"

    def __init__(self, local_path: str | Path, *, key_prefix: str | None = None):
        self._root = Path(local_path).resolve(strict=False)
        self._key_prefix = key_prefix.strip("/") if key_prefix else None

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "LocalStorageBackend":
        local_path = config.get("local_path")
        if not local_path:
            raise BackendConfigError("local backend requires 'local_path'")
        if not Path(str(local_path)).is_absolute():
            raise BackendConfigError("local backend 'local_path' must be absolute")
        return cls(str(local_path), key_prefix=config.get("key_prefix"))

    def _full_path(self, path: str) -> Path:
        try:
            return resolve_under_root(self._root, join_key_prefix(self._key_prefix, path))
        except PathSafetyError as exc:
            raise UnsupportedObjectKeyError(str(exc), path=path) from exc

    def _listing_root(self) -> Path:
        if self._key_prefix:
            return self._root / self._key_prefix
        return self._root

    def list(self, prefix: str | None = None, *, page_size: int = 1000) -> Iterator[list[ObjectInfo]]:
        base = self._listing_root()
        if not base.exists():
            return
        page: list[ObjectInfo] = []
        try:
            for dirpath, dirnames, filenames in os.walk(base):
                dirnames.sort()
                for name in sorted(filenames):
                    if _is_hidden_artifact(name):
                        continue
                    full = Path(dirpath) / name
                    key = full.relative_to(base).as_posix()
                    if prefix and not key.startswith(prefix):
                        continue
                    size_bytes = _entry_size(full, key)
                    if size_bytes is None:
                        continue
                    page.append(ObjectInfo(path=key, size_bytes=size_bytes))
                    if len(page) >= page_size:
                        yield page
                        page = []
        except OSError as exc:
            raise _classify_os_error(exc, prefix or "") from exc
        if page:
            yield page

    def get_object_stream(self, path: str, *, chunk_size: int = 1024 * 1024) -> ObjectStream:
        full = self._full_path(path)
        try:
            handle = full.open("rb")
            size_bytes = os.fstat(handle.fileno()).st_size
        except OSError as exc:
            raise _classify_os_error(exc, path) from exc

        def _chunks() -> Iterator[bytes]:
            while True:
                try:
                    chunk = handle.read(chunk_size)
                except OSError as exc:
                    raise _classify_os_error(exc, path) from exc
                if not chunk:
                    return
                yield chunk

        return ObjectStream(path=path, size_bytes=size_bytes, chunks=_chunks(), _close=handle.close)

    def put_object_stream(
        self,
        path: str,
        chunks: Iterable[bytes],
        *,
        checksum_algorithm: str | None = None,
    ) -> PutResult:
        full = self._full_path(path)
        partial = full.with_name(f".{full.name}.{uuid4().hex}{_PARTIAL_SUFFIX}")
        hasher = CountingHasher(checksum_algorithm)
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            with partial.open("wb") as handle:
                for chunk in chunks:
                    handle.write(chunk)
                    hasher.update(chunk)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(partial, full)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise _classify_os_error(exc, path) from exc
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return hasher.result()

    def delete(self, path: str) -> None:
        full = self._full_path(path)
        try:
            full.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise _classify_os_error(exc, path) from exc
        logger.info("Deleted local object %s", path)

    def test_connection(self) -> bool:
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self._root, os.R_OK | os.W_OK)

    def describe(self) -> dict[str, str]:
        return {"provider": self.provider, "location": self._root.as_posix(), "key_prefix": self._key_prefix or ""}
