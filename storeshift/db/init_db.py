from __future__ import annotations

import logging

from sqlalchemy import Engine, func, inspect, select, text

from storeshift.db.migrations import MIGRATIONS, apply_migrations
from storeshift.db.models import ACTIVE_MIGRATION_STATUSES, Base, MigrationJob
from storeshift.db.session import get_engine

logger = logging.getLogger(__name__)


class SchemaTooNewError(RuntimeError):
    pass


def _recorded_schema_version(engine: Engine) -> int:
    with engine.connect() as conn:
        if not inspect(conn).has_table("schema_migrations"):
            return 0
        return int(conn.execute(text("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")).scalar_one())


def initialize_database() -> int:
    """Create or upgrade the job store and return its schema version.

    Refuses a database last written by a newer build, since orphan recovery
    would otherwise run against job rows it cannot interpret.
    """
    engine = get_engine()
    supported = MIGRATIONS[-1].version
    recorded = _recorded_schema_version(engine)
    if recorded > supported:
        raise SchemaTooNewError(f"Job store schema is version {recorded}; this build supports up to {supported}")

    Base.metadata.create_all(bind=engine)
    apply_migrations(engine)
    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()

    with engine.connect() as conn:
        active = conn.execute(
            select(func.count()).select_from(MigrationJob).where(MigrationJob.status.in_(ACTIVE_MIGRATION_STATUSES))
        ).scalar_one()
    logger.info(
        "Job store ready at %s (schema v%d, %d active migrations)",
        engine.url.render_as_string(hide_password=True),
        supported,
        active,
    )
    return supported
