from __future__ import annotations

import hashlib
from typing import Protocol

from blake3 import blake3

from storeshift.core.config import SUPPORTED_CHECKSUM_ALGORITHMS


class Hasher(Protocol):
    def update(self, data: bytes, /) -> object: ...

    def hexdigest(self) -> str: ...


def new_hasher(algorithm: str) -> Hasher:
    normalized = algorithm.strip().lower()
    if normalized == "blake3":
        return blake3()
    if normalized == "sha256":
        return hashlib.sha256()
    if normalized == "md5":
        # Only for checking digests a source reports, never configurable.
        return hashlib.md5(usedforsecurity=False)
    raise ValueError(f"Unsupported checksum algorithm: {algorithm}. Allowed: {sorted(SUPPORTED_CHECKSUM_ALGORITHMS)}")

