from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from typing import Any

from storeshift.core.path_safety import PathSafetyError, join_key_prefix, strip_key_prefix, validate_object_key
from storeshift.storage.base import CountingHasher, ObjectInfo, ObjectStream, PutResult, StorageBackend
from storeshift.storage.errors import BackendConfigError, ObjectNotFoundError, UnsupportedObjectKeyError

_BUCKETS: dict[str, dict[str, bytes]] = {}
_BUCKETS_LOCK = threading.Lock()


def get_bucket(name: str) -> dict[str, bytes]:
    with _BUCKETS_LOCK:
        return _BUCKETS.setdefault(name, {})


class InMemoryStorageBackend(StorageBackend):
    """Process-local object store keyed by bucket name, for development and tests."""

    provider = "memory"

    def __init__(self, bucket: str, *, key_prefix: str | None = None):
        self._bucket_name = bucket
        self._objects = get_bucket(bucket)
        self._key_prefix = key_prefix.strip("/") if key_prefix else None

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "InMemoryStorageBackend":
        bucket = config.get("bucket")
        if not bucket:
            raise BackendConfigError("memory backend requires 'bucket'")
        return cls(str(bucket), key_prefix=config.get("key_prefix"))

    def _key(self, path: str) -> str:
        try:
            return join_key_prefix(self._key_prefix, validate_object_key(path))
        except PathSafetyError as exc:
            raise UnsupportedObjectKeyError(str(exc), path=path) from exc

    def list(self, prefix: str | None = None, *, page_size: int = 1000) -> Iterator[list[ObjectInfo]]:
        with _BUCKETS_LOCK:
            items = sorted(self._objects.items())
        page: list[ObjectInfo] = []
        scope = join_key_prefix(self._key_prefix, "") if self._key_prefix else ""
        for key, data in items:
            if scope and not key.startswith(scope):
                continue
            relative = strip_key_prefix(self._key_prefix, key)
            if prefix and not relative.startswith(prefix):
                continue
            page.append(ObjectInfo(path=relative, size_bytes=len(data)))
            if len(page) >= page_size:
                yield page
                page = []
        if page:
            yield page

    def get_object_stream(self, path: str, *, chunk_size: int = 1024 * 1024) -> ObjectStream:
        key = self._key(path)
        with _BUCKETS_LOCK:
            data = self._objects.get(key)
        if data is None:
            raise ObjectNotFoundError(f"Object not found: {path}", path=path)

        def _chunks() -> Iterator[bytes]:
            view = memoryview(data)
            for offset in range(0, len(data), chunk_size):
                yield bytes(view[offset : offset + chunk_size])

        return ObjectStream(path=path, size_bytes=len(data), chunks=_chunks())

    def put_object_stream(
        self,
        path: str,
        chunks: Iterable[bytes],
        *,
        checksum_algorithm: str | None = None,
    ) -> PutResult:
        key = self._key(path)
        hasher = CountingHasher(checksum_algorithm)
        buffer = bytearray()
        for chunk in chunks:
            buffer.extend(chunk)
            hasher.update(chunk)
        with _BUCKETS_LOCK:
            self._objects[key] = bytes(buffer)
        return hasher.result()

    def delete(self, path: str) -> None:
        key = self._key(path)
        with _BUCKETS_LOCK:
            self._objects.pop(key, None)

    def test_connection(self) -> bool:
        return True

    def describe(self) -> dict[str, str]:
        return {"provider": self.provider, "location": self._bucket_name, "key_prefix": self._key_prefix or ""}
