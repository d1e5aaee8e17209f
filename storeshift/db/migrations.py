from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    return any(index.get("name") == index_name for index in inspector.get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _resolve_duplicate_active_migrations(conn: Connection) -> None:
    # Keep the newest active job per workspace; older duplicates are failed so the
    # unique index can be built.
    conn.execute(
        text(
            """
            UPDATE migration_jobs
            SET status = 'failed',
                error_code = 'DUPLICATE_ACTIVE_JOB',
                error_message = 'Superseded by a newer active migration for the workspace',
                owner_id = NULL,
                lease_expires_at = NULL
            WHERE status IN ('pending', 'in_progress', 'paused')
              AND discarded_at IS NULL
              AND id NOT IN (
                  SELECT id FROM (
                      SELECT j.id AS id
                      FROM migration_jobs j
                      WHERE j.status IN ('pending', 'in_progress', 'paused')
                        AND j.discarded_at IS NULL
                        AND NOT EXISTS (
                            SELECT 1
                            FROM migration_jobs newer
                            WHERE newer.workspace_id = j.workspace_id
                              AND newer.status IN ('pending', 'in_progress', 'paused')
                              AND newer.discarded_at IS NULL
                              AND (newer.created_at > j.created_at
                                   OR (newer.created_at = j.created_at AND newer.id > j.id))
                        )
                  ) AS keepers
              )
            """
        )
    )


def _migration_0002_single_active_migration_per_workspace(conn: Connection) -> None:
    if not _table_exists(conn, "migration_jobs"):
        return

    conn.execute(text("DROP INDEX IF EXISTS ux_migration_jobs_active_workspace"))
    _resolve_duplicate_active_migrations(conn)
    conn.execute(
        text(
            "CREATE UNIQUE INDEX ux_migration_jobs_active_workspace ON migration_jobs (workspace_id) "
            "WHERE status IN ('pending', 'in_progress', 'paused') AND discarded_at IS NULL"
        )
    )


def _migration_0003_file_record_audit_columns(conn: Connection) -> None:
    if not _table_exists(conn, "migration_files"):
        return

    if not _column_exists(conn, "migration_files", "error_kind"):
        conn.execute(text("ALTER TABLE migration_files ADD COLUMN error_kind VARCHAR(64)"))

    if not _column_exists(conn, "migration_files", "duration_ms"):
        conn.execute(text("ALTER TABLE migration_files ADD COLUMN duration_ms INTEGER"))

    if not _index_exists(conn, "migration_files", "ix_migration_files_job_status"):
        conn.execute(text("CREATE INDEX ix_migration_files_job_status ON migration_files (job_id, status, id)"))


def _migration_0004_job_control_and_cutover_columns(conn: Connection) -> None:
    if not _table_exists(conn, "migration_jobs"):
        return

    if not _column_exists(conn, "migration_jobs", "control_request"):
        conn.execute(text("ALTER TABLE migration_jobs ADD COLUMN control_request VARCHAR(6)"))

    if not _column_exists(conn, "migration_jobs", "cutover_at"):
        conn.execute(text("ALTER TABLE migration_jobs ADD COLUMN cutover_at DATETIME"))

    if not _index_exists(conn, "migration_jobs", "ix_migration_jobs_status_lease"):
        conn.execute(
            text("CREATE INDEX ix_migration_jobs_status_lease ON migration_jobs (status, lease_expires_at)")
        )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(
        version=2,
        name="single_active_migration_per_workspace",
        apply=_migration_0002_single_active_migration_per_workspace,
    ),
    MigrationStep(
        version=3,
        name="file_record_audit_columns",
        apply=_migration_0003_file_record_audit_columns,
    ),
    MigrationStep(
        version=4,
        name="job_control_and_cutover_columns",
        apply=_migration_0004_job_control_and_cutover_columns,
    ),
)


def apply_migrations(engine: Engine) -> None:
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
