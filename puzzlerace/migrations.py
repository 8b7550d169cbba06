"""
Tracked schema migrations for puzzlerace.
Tables come from SQLModel.metadata.create_all; migrations add the indexes the
leaderboard and admin queries rely on.
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlmodel import Field, Session, SQLModel, select, text

from .logging_utils import get_logger

logger = get_logger("puzzlerace.migrations")


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS: List[Tuple[str, str]] = [
    ("001_leaderboard_indexes", """
    CREATE INDEX IF NOT EXISTS idx_session_leaderboard ON gamesession(failed, total_time_ms, completed_at);
    CREATE INDEX IF NOT EXISTS idx_session_completed_at ON gamesession(completed_at)
    """),
    ("002_admin_indexes", """
    CREATE INDEX IF NOT EXISTS idx_player_created_at ON player(created_at);
    CREATE INDEX IF NOT EXISTS idx_archive_archived_at ON puzzlearchive(archived_at)
    """),
]


def ensure_migration_table(engine):
    Migration.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine, migration_name: str) -> bool:
    ensure_migration_table(engine)
    with Session(engine) as session:
        result = session.exec(
            select(Migration).where(Migration.name == migration_name)
        ).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False if it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.debug("migration_skipped", extra={"migration": migration_name})
        return False

    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.exec(text(statement))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("migration_failed", extra={"migration": migration_name, "error": str(e)})
            raise

    logger.info("migration_applied", extra={"migration": migration_name})
    return True


def run_migrations(engine) -> List[str]:
    """Run all pending migrations, returning the names applied this time."""
    applied = [name for name, sql in MIGRATIONS if apply_migration(engine, name, sql)]
    logger.info("migrations_complete", extra={"applied": len(applied)})
    return applied
