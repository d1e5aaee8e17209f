"""Shared fixtures: scripted storage backends for failure injection."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable, Iterator
from typing import Any

import pytest

import storeshift.storage.memory as memory_module
from storeshift.storage.base import ObjectInfo, ObjectStream, PutResult, StorageBackend
from storeshift.storage.memory import InMemoryStorageBackend
from storeshift.storage.registry import create_backend


class ScriptedBackend(StorageBackend):
    """Wraps an in-memory bucket and injects failures per object key."""

    def __init__(self, inner: InMemoryStorageBackend):
        self.inner = inner
        self.provider = inner.provider
        self.get_calls: list[str] = []
        self.put_calls: list[str] = []
        self.corrupt_paths: set[str] = set()
        self.reported_md5: dict[str, str] = {}
        self.chunk_delay_seconds = 0.0
        self.reachable = True
        self.list_error: Exception | None = None
        self.gate: threading.Event | None = None
        self._get_failures: dict[str, tuple[Exception, int | None]] = {}
        self._put_failures: dict[str, tuple[Exception, int | None]] = {}
        self._lock = threading.Lock()

    def fail_get(self, path: str, exc: Exception, *, times: int | None = None) -> None:
        self._get_failures[path] = (exc, times)

    def fail_put(self, path: str, exc: Exception, *, times: int | None = None) -> None:
        self._put_failures[path] = (exc, times)

    def _next_failure(self, failures: dict[str, tuple[Exception, int | None]], path: str) -> Exception | None:
        with self._lock:
            entry = failures.get(path)
            if entry is None:
                return None
            exc, remaining = entry
            # None repeats forever.
            if remaining is not None:
                if remaining <= 1:
                    failures.pop(path)
                else:
                    failures[path] = (exc, remaining - 1)
            return exc

    def seed(self, objects: dict[str, bytes]) -> None:
        for path, data in objects.items():
            self.inner.put_object_stream(path, [data])

    def read(self, path: str) -> bytes:
        with self.inner.get_object_stream(path) as stream:
            return b"".join(stream.chunks)

    def keys(self) -> list[str]:
        return [item.path for page in self.inner.list() for item in page]

    def list(self, prefix: str | None = None, *, page_size: int = 1000) -> Iterator[list[ObjectInfo]]:
        if self.list_error is not None:
            raise self.list_error
        return self.inner.list(prefix, page_size=page_size)

    def get_object_stream(self, path: str, *, chunk_size: int = 1024 * 1024) -> ObjectStream:
        with self._lock:
            self.get_calls.append(path)
        if self.gate is not None:
            self.gate.wait(timeout=10)
        failure = self._next_failure(self._get_failures, path)
        if failure is not None:
            raise failure
        stream = self.inner.get_object_stream(path, chunk_size=chunk_size)
        if path in self.reported_md5:
            stream.checksum = self.reported_md5[path]
            stream.checksum_algorithm = "md5"
        return stream

    def _slow(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        for chunk in chunks:
            time.sleep(self.chunk_delay_seconds)
            yield chunk

    def put_object_stream(
        self,
        path: str,
        chunks: Iterable[bytes],
        *,
        checksum_algorithm: str | None = None,
    ) -> PutResult:
        with self._lock:
            self.put_calls.append(path)
        failure = self._next_failure(self._put_failures, path)
        if failure is not None:
            raise failure
        if self.chunk_delay_seconds:
            chunks = self._slow(chunks)
        result = self.inner.put_object_stream(path, chunks, checksum_algorithm=checksum_algorithm)
        if path in self.corrupt_paths:
            return PutResult(size_bytes=result.size_bytes, checksum="0" * 64, checksum_algorithm=checksum_algorithm)
        return result

    def delete(self, path: str) -> None:
        self.inner.delete(path)

    def test_connection(self) -> bool:
        return self.reachable

    def describe(self) -> dict[str, str]:
        return self.inner.describe()


class BackendRig:
    """Backend factory handing out one shared ScriptedBackend per memory bucket."""

    def __init__(self) -> None:
        self._backends: dict[str, ScriptedBackend] = {}
        self._lock = threading.Lock()

    def backend(self, bucket: str) -> ScriptedBackend:
        with self._lock:
            if bucket not in self._backends:
                self._backends[bucket] = ScriptedBackend(InMemoryStorageBackend(bucket))
            return self._backends[bucket]

    def factory(self, provider: str, config: dict[str, Any]) -> StorageBackend:
        if provider == "memory":
            return self.backend(str(config["bucket"]))
        return create_backend(provider, config)


@pytest.fixture(autouse=True)
def clean_memory_buckets():
    yield
    with memory_module._BUCKETS_LOCK:
        memory_module._BUCKETS.clear()


@pytest.fixture
def backend_rig() -> BackendRig:
    return BackendRig()
