from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from typing import Any

from storeshift.storage.base import StorageBackend
from storeshift.storage.errors import UnsupportedProviderError
from storeshift.storage.local import LocalStorageBackend
from storeshift.storage.memory import InMemoryStorageBackend
from storeshift.storage.s3 import S3StorageBackend

BackendFactory = Callable[[dict[str, Any]], StorageBackend]

# gcs and azure are served by SDK adapters registered at startup via register_backend().
_FACTORIES: dict[str, BackendFactory] = {
    "local": LocalStorageBackend.from_config,
    "memory": InMemoryStorageBackend.from_config,
    "s3": lambda config: S3StorageBackend.from_config(config, provider="s3"),
    "minio": lambda config: S3StorageBackend.from_config(config, provider="minio"),
    "managed": lambda config: S3StorageBackend.from_config(config, provider="managed"),
}
_FACTORIES_LOCK = threading.Lock()


def normalize_provider(provider: str) -> str:
    normalized = provider.strip().lower()
    if not normalized:
        raise UnsupportedProviderError("Storage provider cannot be blank")
    return normalized


def register_backend(provider: str, factory: BackendFactory) -> None:
    with _FACTORIES_LOCK:
        _FACTORIES[normalize_provider(provider)] = factory


def unregister_backend(provider: str) -> None:
    with _FACTORIES_LOCK:
        _FACTORIES.pop(normalize_provider(provider), None)


def registered_providers() -> list[str]:
    with _FACTORIES_LOCK:
        return sorted(_FACTORIES)


def create_backend(provider: str, config: Mapping[str, Any] | None) -> StorageBackend:
    normalized = normalize_provider(provider)
    with _FACTORIES_LOCK:
        factory = _FACTORIES.get(normalized)
    if factory is None:
        allowed = ", ".join(registered_providers())
        raise UnsupportedProviderError(f"Unsupported storage provider: {provider}. Registered: {allowed}")
    return factory(dict(config or {}))
