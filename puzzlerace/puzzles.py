"""The active puzzle and the read-only view of it the session engine consumes."""

from typing import Optional, Union

from sqlmodel import Session

from . import clock, models
from .errors import PuzzleUnavailableError
from .game import PuzzleKind

AnswerKey = Union[models.ConnectionsKey, models.CrosswordKey]


class StaticPuzzleProvider:
    """Answer keys fixed at construction time."""

    def __init__(self, connections: Optional[models.ConnectionsKey] = None,
                 crossword: Optional[models.CrosswordKey] = None):
        self._connections = connections
        self._crossword = crossword

    def connections(self) -> Optional[models.ConnectionsKey]:
        return self._connections

    def crossword(self) -> Optional[models.CrosswordKey]:
        return self._crossword


class CurrentPuzzleProvider:
    """Reads the singleton current_puzzle row through the caller's session."""

    def __init__(self, db: Session):
        self.db = db

    def _row(self) -> Optional[models.CurrentPuzzle]:
        return self.db.get(models.CurrentPuzzle, 1)

    def connections(self) -> Optional[models.ConnectionsKey]:
        row = self._row()
        if row is None or not row.connections_json:
            return None
        return models.ConnectionsKey.model_validate_json(row.connections_json)

    def crossword(self) -> Optional[models.CrosswordKey]:
        row = self._row()
        if row is None or not row.crossword_json:
            return None
        return models.CrosswordKey.model_validate_json(row.crossword_json)


def require_key(provider, kind: PuzzleKind) -> AnswerKey:
    key = provider.connections() if kind == PuzzleKind.CONNECTIONS else provider.crossword()
    if key is None:
        raise PuzzleUnavailableError(f"No {kind.value} puzzle available")
    return key


def _current_row(db: Session) -> models.CurrentPuzzle:
    row = db.get(models.CurrentPuzzle, 1)
    if row is None:
        row = models.CurrentPuzzle(id=1)
        db.add(row)
    return row


def get_current_puzzle(db: Session) -> dict:
    provider = CurrentPuzzleProvider(db)
    conn = provider.connections()
    cw = provider.crossword()
    row = db.get(models.CurrentPuzzle, 1)
    updated = row.updated_at if row is not None else None
    return {
        'connections_data': conn.model_dump() if conn else None,
        'crossword_data': cw.model_dump() if cw else None,
        'updated_at': clock.as_utc(updated).isoformat() if updated else None,
    }


def set_current_connections(db: Session, key: models.ConnectionsKey) -> None:
    row = _current_row(db)
    row.connections_json = key.model_dump_json()
    row.updated_at = clock.now()
    db.add(row)
    db.commit()


def set_current_crossword(db: Session, key: models.CrosswordKey) -> None:
    row = _current_row(db)
    row.crossword_json = key.model_dump_json()
    row.updated_at = clock.now()
    db.add(row)
    db.commit()


def clear_current_puzzle(db: Session) -> None:
    """Blank both answer keys. Leaves committing to the caller."""
    row = _current_row(db)
    row.connections_json = None
    row.crossword_json = None
    row.updated_at = clock.now()
    db.add(row)
