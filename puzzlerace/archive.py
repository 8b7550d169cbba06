"""Weekly archive and reset.

Snapshots the current puzzle pair with its final leaderboard, then wipes every
player and session and blanks the current puzzle. All of it happens in one
transaction, so a failure at any step leaves the week untouched.
"""

import json
from typing import List, Optional

from sqlalchemy import delete, text
from sqlmodel import Session, col, select

from . import cache, clock, crud, models, puzzles
from .errors import IncompletePuzzleError
from .logging_utils import get_logger

logger = get_logger("puzzlerace.archive")

# Postgres advisory lock key serializing archive runs.
ARCHIVE_LOCK_KEY = 970001


def _take_reset_lock(db: Session) -> None:
    # SQLite already holds the database write lock from BEGIN IMMEDIATE.
    if db.get_bind().dialect.name == 'postgresql':
        db.exec(text("SELECT pg_advisory_xact_lock(:key)").bindparams(key=ARCHIVE_LOCK_KEY))


def run_archive_and_reset(db: Session) -> models.PuzzleArchive:
    """Archive the current week and start a fresh one.

    Raises IncompletePuzzleError, without touching anything, when either
    answer key is missing. Concurrent runs are serialized; the loser of the
    race finds the puzzle already cleared and fails the same way.
    """
    try:
        _take_reset_lock(db)
        current = db.exec(
            select(models.CurrentPuzzle)
            .where(models.CurrentPuzzle.id == 1)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if current is None or not current.connections_json or not current.crossword_json:
            raise IncompletePuzzleError()

        leaderboard = crud.get_leaderboard(db)
        now = clock.now()
        archive = models.PuzzleArchive(
            archived_date=now.date().isoformat(),
            archived_at=now,
            connections_json=current.connections_json,
            crossword_json=current.crossword_json,
            leaderboard_json=json.dumps([e.model_dump() for e in leaderboard]),
            player_count=len(leaderboard),
        )
        db.add(archive)
        db.flush()

        db.exec(delete(models.GameSession))
        db.exec(delete(models.Player))
        puzzles.clear_current_puzzle(db)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(archive)
    cache.invalidate_leaderboard_cache()
    logger.info("archive_reset", extra={"archive_id": archive.id, "player_count": archive.player_count})
    return archive


def list_archives(db: Session) -> List[dict]:
    """Archive summaries, newest first."""
    rows = db.exec(
        select(models.PuzzleArchive).order_by(col(models.PuzzleArchive.archived_at).desc(), col(models.PuzzleArchive.id).desc())
    ).all()
    return [
        {
            'id': a.id,
            'archived_date': a.archived_date,
            'archived_at': clock.as_utc(a.archived_at).isoformat() if a.archived_at else None,
            'player_count': a.player_count,
        }
        for a in rows
    ]


def get_archive(db: Session, archive_id: int) -> Optional[dict]:
    a = db.get(models.PuzzleArchive, archive_id)
    return a.to_dict() if a else None
