"""
Schema migrations: index creation tracked in a ``Migration`` table.
"""

from sqlmodel import SQLModel, Field, create_engine, text, Session, select
from typing import Optional
from datetime import datetime, timezone
import logging

from .config import settings

logger = logging.getLogger(__name__)


class Migration(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


def get_engine():
    db_path = settings.DATABASE_URL
    connect_args = {"check_same_thread": False} if db_path.startswith("sqlite") else {}
    return create_engine(db_path, echo=False, connect_args=connect_args)


def has_migration_been_applied(engine, migration_name: str) -> bool:
    Migration.metadata.create_all(engine)
    with Session(engine) as session:
        result = session.exec(select(Migration).where(Migration.name == migration_name)).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration once. Returns True when it ran now."""
    if has_migration_been_applied(engine, migration_name):
        logger.info(f"Migration {migration_name} already applied, skipping")
        return False

    logger.info(f"Applying migration: {migration_name}")
    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.execute(text(statement))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to apply migration {migration_name}: {e}")
            raise
    logger.info(f"Migration {migration_name} applied successfully")
    return True


MIGRATIONS = [
    (
        "001_session_lease_indexes",
        """
        CREATE INDEX IF NOT EXISTS idx_gamesession_profile_ended ON gamesession(profile_id, ended_at);
        CREATE INDEX IF NOT EXISTS idx_gamesession_started ON gamesession(started_at)
        """,
    ),
    (
        "002_task_result_indexes",
        """
        CREATE INDEX IF NOT EXISTS idx_taskresult_open ON taskresult(profile_id, completed_at);
        CREATE INDEX IF NOT EXISTS idx_taskresult_profile_sequence ON taskresult(profile_id, sequence_id);
        CREATE INDEX IF NOT EXISTS idx_taskresult_profile_level ON taskresult(profile_id, level_id)
        """,
    ),
]


def run_migrations(engine=None):
    engine = engine or get_engine()
    for name, sql in MIGRATIONS:
        apply_migration(engine, name, sql)
    logger.info("All migrations completed")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_migrations()
