from __future__ import annotations


class ChecksumMismatchError(RuntimeError):
    """Source and target disagree on content; retried like a transient failure."""

    error_kind = "ChecksumMismatchError"
    fatal = False
    retryable = True

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(message)
        self.path = path


class JobAlreadyActiveError(RuntimeError):
    pass


class NotResumableError(RuntimeError):
    pass


class MigrationNotFoundError(RuntimeError):
    pass


class InvalidMigrationStateError(RuntimeError):
    pass


class CutoverRejectedError(RuntimeError):
    pass


class MigrationPolicyError(ValueError):
    pass
