from storeshift.worker.pipeline import (
    enqueue_migration,
    get_migration_coordinator,
    reset_migration_coordinator,
    resume_orphaned_migrations,
)

__all__ = [
    "enqueue_migration",
    "get_migration_coordinator",
    "reset_migration_coordinator",
    "resume_orphaned_migrations",
]
