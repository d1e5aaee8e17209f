from storeshift.storage.base import ObjectInfo, ObjectStream, PutResult, StorageBackend
from storeshift.storage.errors import (
    AuthorizationError,
    BackendConfigError,
    ObjectNotFoundError,
    QuotaExceededError,
    StorageError,
    TransientIOError,
    UnsupportedObjectKeyError,
    UnsupportedProviderError,
)
from storeshift.storage.registry import create_backend, register_backend, registered_providers, unregister_backend

__all__ = [
    "AuthorizationError",
    "BackendConfigError",
    "ObjectInfo",
    "ObjectNotFoundError",
    "ObjectStream",
    "PutResult",
    "QuotaExceededError",
    "StorageBackend",
    "StorageError",
    "TransientIOError",
    "UnsupportedObjectKeyError",
    "UnsupportedProviderError",
    "create_backend",
    "register_backend",
    "registered_providers",
    "unregister_backend",
]
