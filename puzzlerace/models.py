import enum
import json
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from sqlmodel import SQLModel, Field

from . import clock, game


# ---- Answer keys ----

class ConnectionsGroup(BaseModel):
    label: str
    words: List[str]
    difficulty: int = 1
    color: str = ''


class ConnectionsKey(BaseModel):
    groups: List[ConnectionsGroup]

    @model_validator(mode='after')
    def check_shape(self):
        if len(self.groups) != game.CONNECTIONS_NUM_GROUPS:
            raise ValueError(f'groups must contain exactly {game.CONNECTIONS_NUM_GROUPS} groups')
        seen = set()
        for i, g in enumerate(self.groups, start=1):
            g.label = g.label.strip()
            if not g.label or len(g.label) > 80:
                raise ValueError(f'Group {i} label must be 1-80 characters')
            if len(g.words) != game.CONNECTIONS_GROUP_SIZE:
                raise ValueError(f'Group {i} must have exactly {game.CONNECTIONS_GROUP_SIZE} words')
            g.words = [game.normalize_word(w) for w in g.words]
            for w in g.words:
                if not w or len(w) > 40:
                    raise ValueError(f'Group {i} words must be 1-40 characters')
                if w in seen:
                    raise ValueError(f'Duplicate connections word: {w}')
                seen.add(w)
        return self


class CrosswordClue(BaseModel):
    number: int
    clue: str
    row: int
    col: int
    direction: Literal['across', 'down']
    answer: Optional[str] = None


class CrosswordClues(BaseModel):
    across: List[CrosswordClue] = []
    down: List[CrosswordClue] = []


class CrosswordKey(BaseModel):
    size: int = game.CROSSWORD_SIZE
    grid: List[List[Optional[str]]]
    clues: CrosswordClues

    @field_validator('grid')
    @classmethod
    def check_grid(cls, v):
        if len(v) != game.CROSSWORD_SIZE or any(len(row) != game.CROSSWORD_SIZE for row in v):
            raise ValueError(f'grid must be {game.CROSSWORD_SIZE}x{game.CROSSWORD_SIZE}')
        out = []
        for row in v:
            cells = []
            for cell in row:
                if cell is None:
                    cells.append(None)
                    continue
                letter = game.normalize_word(cell)
                if len(letter) != 1 or not letter.isalpha():
                    raise ValueError('grid cells must be null or a single letter')
                cells.append(letter)
            out.append(cells)
        return out

    @model_validator(mode='after')
    def check_clues(self):
        if self.size != game.CROSSWORD_SIZE:
            raise ValueError(f'size must be {game.CROSSWORD_SIZE}')
        if not self.clues.across and not self.clues.down:
            raise ValueError('Crossword must have at least one clue')
        return self

    def public_clues(self) -> dict:
        """Clues without their answers, safe to hand to players."""
        return self.clues.model_dump(exclude={'across': {'__all__': {'answer'}}, 'down': {'__all__': {'answer'}}})


# ---- Per-puzzle session state ----

class PuzzleStatus(str, enum.Enum):
    ACTIVE = 'active'
    SOLVED = 'solved'
    FAILED = 'failed'


class SessionPhase(str, enum.Enum):
    NOT_STARTED = 'not_started'
    IN_PROGRESS = 'in_progress'
    FINISHED = 'finished'


class Cell(BaseModel):
    model_config = ConfigDict(frozen=True)

    row: int
    col: int


def cells_from(pairs) -> List[Cell]:
    return [Cell(row=r, col=c) for r, c in pairs]


class ConnectionsState(BaseModel):
    solved_groups: List[ConnectionsGroup] = []
    mistakes: int = 0
    failed: bool = False
    completed: bool = False
    word_order: List[str] = []

    @property
    def status(self) -> PuzzleStatus:
        if self.completed:
            return PuzzleStatus.SOLVED
        if self.failed:
            return PuzzleStatus.FAILED
        return PuzzleStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status is not PuzzleStatus.ACTIVE

    def solved_labels(self) -> set:
        return {g.label for g in self.solved_groups}

    def solved_words(self) -> set:
        return {game.normalize_word(w) for g in self.solved_groups for w in g.words}


class CrosswordState(BaseModel):
    completed: bool = False
    failed: bool = False
    attempts: int = 0
    cemented_cells: List[Cell] = []
    current_grid: Optional[List[List[Optional[str]]]] = None

    @property
    def status(self) -> PuzzleStatus:
        if self.completed:
            return PuzzleStatus.SOLVED
        if self.failed:
            return PuzzleStatus.FAILED
        return PuzzleStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status is not PuzzleStatus.ACTIVE

    def cemented(self) -> List[game.Cell]:
        return [(c.row, c.col) for c in self.cemented_cells]


# ---- Tables ----

class Player(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    region: str
    handle: str = Field(index=True, unique=True)
    token_secret: Optional[str] = None
    created_at: Optional[datetime] = None


class GameSession(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    player_id: int = Field(index=True, unique=True, foreign_key='player.id')
    started_at: Optional[datetime] = None
    first_puzzle: Optional[str] = None
    completed_at: Optional[datetime] = None
    total_time_ms: Optional[int] = None
    failed: bool = False
    connections_completed: bool = False
    crossword_completed: bool = False
    connections_json: str = ""
    crossword_json: str = ""
    created_at: Optional[datetime] = None

    def connections_state(self) -> ConnectionsState:
        if not self.connections_json:
            return ConnectionsState()
        return ConnectionsState.model_validate_json(self.connections_json)

    def put_connections_state(self, state: ConnectionsState) -> None:
        self.connections_json = state.model_dump_json()
        self.connections_completed = state.completed

    def crossword_state(self) -> CrosswordState:
        if not self.crossword_json:
            return CrosswordState()
        return CrosswordState.model_validate_json(self.crossword_json)

    def put_crossword_state(self, state: CrosswordState) -> None:
        self.crossword_json = state.model_dump_json()
        self.crossword_completed = state.completed

    @property
    def phase(self) -> SessionPhase:
        if self.started_at is None:
            return SessionPhase.NOT_STARTED
        if self.connections_state().is_terminal and self.crossword_state().is_terminal:
            return SessionPhase.FINISHED
        return SessionPhase.IN_PROGRESS


class CurrentPuzzle(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    connections_json: Optional[str] = None
    crossword_json: Optional[str] = None
    updated_at: Optional[datetime] = None


class PuzzleArchive(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    archived_date: str = ""  # YYYY-MM-DD
    archived_at: Optional[datetime] = None
    connections_json: str = ""
    crossword_json: str = ""
    leaderboard_json: str = "[]"
    player_count: int = 0

    def leaderboard(self) -> List[dict]:
        return json.loads(self.leaderboard_json or "[]")

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'archived_date': self.archived_date,
            'archived_at': clock.as_utc(self.archived_at).isoformat() if self.archived_at else None,
            'connections_data': json.loads(self.connections_json) if self.connections_json else None,
            'crossword_data': json.loads(self.crossword_json) if self.crossword_json else None,
            'leaderboard': self.leaderboard(),
        }


class GameSetting(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value_json: str = "{}"
    updated_at: Optional[datetime] = None


# ---- Engine results ----

class LeaderboardEntry(BaseModel):
    rank: int
    name: str
    region: str
    handle: str
    total_time_ms: int


class GuessResult(BaseModel):
    matched: bool
    group: Optional[ConnectionsGroup] = None
    mistakes: int
    failed: bool
    near_miss: bool = False
    already_solved: bool = False
    session_finished: bool = False
    total_time_ms: Optional[int] = None


class CrosswordResult(BaseModel):
    all_correct: bool
    wrong_cells: List[Cell]
    cemented_cells: List[Cell]
    attempts: int
    failed: bool
    session_finished: bool
    total_time_ms: Optional[int] = None


class GiveUpResult(BaseModel):
    gave_up: bool
    total_time_ms: Optional[int] = None
