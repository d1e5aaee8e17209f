from storeshift.migration.coordinator import MigrationCoordinator
from storeshift.migration.errors import (
    ChecksumMismatchError,
    CutoverRejectedError,
    InvalidMigrationStateError,
    JobAlreadyActiveError,
    MigrationNotFoundError,
    MigrationPolicyError,
    NotResumableError,
)
from storeshift.migration.types import CutoverResult, MigrationJobSnapshot, MigrationOptions, MigrationScope

__all__ = [
    "ChecksumMismatchError",
    "CutoverRejectedError",
    "CutoverResult",
    "InvalidMigrationStateError",
    "JobAlreadyActiveError",
    "MigrationCoordinator",
    "MigrationJobSnapshot",
    "MigrationNotFoundError",
    "MigrationOptions",
    "MigrationPolicyError",
    "MigrationScope",
    "NotResumableError",
]
