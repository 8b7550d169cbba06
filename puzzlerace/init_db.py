from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlmodel import Session, SQLModel, create_engine

from . import models
from .config import Config
from .logging_utils import get_logger

logger = get_logger("puzzlerace.init_db")

GAME_LOCKED_KEY = 'game_locked'


def _make_sqlite_writes_exclusive(engine):
    # pysqlite defers BEGIN until the first write, so a read-modify-write
    # would read without holding the lock. Take the write lock up front.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str = '', echo: bool = False):
    url = url or Config.DATABASE_URL
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": Config.SQLITE_BUSY_TIMEOUT},
        )
        _make_sqlite_writes_exclusive(engine)
        return engine
    # Reasonable defaults for pooled connections in production databases
    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
    )


def seed_singletons(engine) -> None:
    """Make sure the current-puzzle row and the lock setting exist."""
    with Session(engine) as s:
        if s.get(models.CurrentPuzzle, 1) is None:
            s.add(models.CurrentPuzzle(id=1, updated_at=datetime.now(timezone.utc)))
        if s.get(models.GameSetting, GAME_LOCKED_KEY) is None:
            s.add(models.GameSetting(
                key=GAME_LOCKED_KEY,
                value_json='{"locked": false}',
                updated_at=datetime.now(timezone.utc),
            ))
        s.commit()


def init_db(url: str = ''):
    engine = make_engine(url)
    SQLModel.metadata.create_all(engine)
    seed_singletons(engine)
    safe_url = make_url(url or Config.DATABASE_URL).render_as_string(hide_password=True)
    logger.info("db_initialized", extra={"url": safe_url})
    return engine


if __name__ == '__main__':
    init_db()
