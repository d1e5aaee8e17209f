from __future__ import annotations


class StorageError(RuntimeError):
    """Base class for failures raised by storage backends.

    ``error_kind`` is the stable name recorded on file records and job error
    lists. ``fatal`` errors abort a whole migration; ``retryable`` errors are
    retried under the per-file retry policy.
    """

    error_kind = "StorageError"
    fatal = False
    retryable = True

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(message)
        self.path = path


class TransientIOError(StorageError):
    error_kind = "TransientIOError"


class AuthorizationError(StorageError):
    error_kind = "AuthorizationError"
    fatal = True
    retryable = False


class QuotaExceededError(StorageError):
    error_kind = "QuotaExceededError"
    fatal = True
    retryable = False


class ObjectNotFoundError(StorageError):
    error_kind = "ObjectNotFoundError"
    retryable = False


class UnsupportedObjectKeyError(StorageError):
    """A key that exists in the bucket but cannot be mapped to a safe relative path."""

    error_kind = "UnsupportedObjectKeyError"
    retryable = False


# Outcomes of these kinds are counted in failed_files but never trip the abort threshold.
FAIL_SOFT_ERROR_KINDS = frozenset({ObjectNotFoundError.error_kind})


class UnsupportedProviderError(ValueError):
    pass


class BackendConfigError(ValueError):
    pass
