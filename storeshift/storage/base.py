from __future__ import annotations

import io
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field

from storeshift.storage.checksum import Hasher, new_hasher


@dataclass(frozen=True)
class ObjectInfo:
    path: str
    size_bytes: int


@dataclass(frozen=True)
class PutResult:
    size_bytes: int
    checksum: str | None
    checksum_algorithm: str | None


@dataclass
class ObjectStream:
    """An open read stream; iterate ``chunks`` once, then close."""

    path: str
    size_bytes: int
    chunks: Iterator[bytes]
    checksum: str | None = None
    checksum_algorithm: str | None = None
    _close: Callable[[], None] | None = field(default=None, repr=False)

    def close(self) -> None:
        if self._close is not None:
            close, self._close = self._close, None
            close()

    def __enter__(self) -> "ObjectStream":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


class CountingHasher:
    def __init__(self, algorithm: str | None):
        self.algorithm = algorithm
        self.size_bytes = 0
        self._hasher: Hasher | None = new_hasher(algorithm) if algorithm else None

    def update(self, chunk: bytes) -> None:
        self.size_bytes += len(chunk)
        if self._hasher is not None:
            self._hasher.update(chunk)

    def result(self) -> PutResult:
        checksum = self._hasher.hexdigest() if self._hasher is not None else None
        return PutResult(size_bytes=self.size_bytes, checksum=checksum, checksum_algorithm=self.algorithm)


class IterableReader(io.RawIOBase):
    """File-like adapter over an iterable of chunks, for SDKs that read() uploads."""

    def __init__(self, chunks: Iterable[bytes], hasher: CountingHasher):
        self._chunks = iter(chunks)
        self._hasher = hasher
        self._buffer = b""
        self._exhausted = False

    def readable(self) -> bool:
        return True

    def readinto(self, target) -> int:  # type: ignore[no-untyped-def]
        while not self._buffer and not self._exhausted:
            try:
                chunk = next(self._chunks)
            except StopIteration:
                self._exhausted = True
                break
            if chunk:
                self._hasher.update(chunk)
                self._buffer = chunk
        if not self._buffer:
            return 0
        size = min(len(target), len(self._buffer))
        target[:size] = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return size


class StorageBackend(ABC):
    provider: str = "unknown"

    @abstractmethod
    def list(self, prefix: str | None = None, *, page_size: int = 1000) -> Iterator[list[ObjectInfo]]:
        """Yield listing pages under ``prefix``; never materializes the full listing."""

    @abstractmethod
    def get_object_stream(self, path: str, *, chunk_size: int = 1024 * 1024) -> ObjectStream:
        ...

    @abstractmethod
    def put_object_stream(
        self,
        path: str,
        chunks: Iterable[bytes],
        *,
        checksum_algorithm: str | None = None,
    ) -> PutResult:
        """Write ``chunks`` to ``path``; the object becomes visible only when complete."""

    @abstractmethod
    def delete(self, path: str) -> None:
        ...

    @abstractmethod
    def test_connection(self) -> bool:
        ...

    @abstractmethod
    def describe(self) -> dict[str, str]:
        """Non-secret identity of the backend location."""

    def close(self) -> None:
        return None
