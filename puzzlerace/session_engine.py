"""Per-player session state machine.

Every mutating operation runs as one transaction against the player's session
row: take the row lock, re-read the row, evaluate, apply the transition and
commit. Two racing requests from the same player therefore see each other's
effects in order, and a retried request against a finished puzzle just gets the
finished state back.

The completion stamp (``completed_at`` / ``total_time_ms``) is written at most
once: when both puzzles become terminal, or immediately when a puzzle is lost.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import cache, clock, game, models, puzzles
from .errors import InvalidGuessError, NotStartedError, SessionNotFoundError
from .game import GroupingVerdict, PuzzleKind
from .logging_utils import get_logger

logger = get_logger("puzzlerace.session_engine")


def _provider(db: Session, provider):
    return provider if provider is not None else puzzles.CurrentPuzzleProvider(db)


def get_session(db: Session, player_id: int) -> Optional[models.GameSession]:
    return db.exec(
        select(models.GameSession).where(models.GameSession.player_id == player_id)
    ).first()


@contextmanager
def _locked_session(db: Session, player_id: int, require_started: bool = True) -> Iterator[models.GameSession]:
    """Hold the player's session row lock for the body, then commit.

    The row is read after the lock is granted, with populate_existing so a
    copy cached in the identity map from before the lock is never trusted.
    Any exception rolls the whole transition back.
    """
    try:
        gs = db.exec(
            select(models.GameSession)
            .where(models.GameSession.player_id == player_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if gs is None:
            raise SessionNotFoundError()
        if require_started and gs.started_at is None:
            raise NotStartedError()
        yield gs
        db.commit()
    except Exception:
        db.rollback()
        raise


def _stamp_if_due(gs: models.GameSession, conn: models.ConnectionsState,
                  cw: models.CrosswordState, now: datetime, failure: bool = False) -> bool:
    """Write the completion stamp unless one already exists.

    Due when both puzzles are terminal, or at once on a failure since the
    clock stops when a puzzle is lost.
    """
    if gs.completed_at is not None or gs.started_at is None:
        return False
    if not failure and not (conn.is_terminal and cw.is_terminal):
        return False
    gs.completed_at = now
    gs.total_time_ms = clock.elapsed_ms(gs.started_at, now)
    return True


def _after_stamp(player_id: int, total_time_ms: Optional[int], failed: bool) -> None:
    cache.invalidate_leaderboard_cache()
    logger.info(
        "completion_stamped",
        extra={"player_id": player_id, "total_time_ms": total_time_ms, "verdict": "failed" if failed else "finished"},
    )


# ---- Lifecycle ----

def start_session(db: Session, player_id: int) -> models.GameSession:
    """Return the player's session, creating it on first use."""
    gs = get_session(db, player_id)
    if gs is not None:
        return gs
    if db.get(models.Player, player_id) is None:
        raise SessionNotFoundError("Player not found")
    gs = models.GameSession(player_id=player_id, created_at=clock.now())
    gs.put_connections_state(models.ConnectionsState())
    gs.put_crossword_state(models.CrosswordState())
    db.add(gs)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent request created it first
        db.rollback()
        gs = get_session(db, player_id)
        if gs is None:
            raise
        return gs
    db.refresh(gs)
    return gs


def start_puzzle(db: Session, player_id: int, kind, provider=None, rng=None) -> models.GameSession:
    """Open a puzzle for the player. Starts the shared timer only once.

    The first call sets ``started_at`` and records which puzzle was opened
    first; later calls, concurrent or not, leave both untouched. Opening the
    grouping puzzle also restores or creates the player's tile order.
    """
    kind = PuzzleKind(kind)
    key = puzzles.require_key(_provider(db, provider), kind)
    start_session(db, player_id)
    with _locked_session(db, player_id, require_started=False) as gs:
        if gs.started_at is None:
            gs.started_at = clock.now()
            gs.first_puzzle = kind.value
            logger.info("timer_started", extra={"player_id": player_id, "puzzle_kind": kind.value})
        if kind == PuzzleKind.CONNECTIONS:
            conn = gs.connections_state()
            if not conn.is_terminal:
                unsolved = _unsolved_words(conn, key)
                stored = [w for w in conn.word_order if game.normalize_word(w) not in conn.solved_words()]
                if not game.is_valid_word_order(stored, unsolved):
                    conn.word_order = game.shuffled_words(unsolved, rng)
                    gs.put_connections_state(conn)
        db.add(gs)
    db.refresh(gs)
    return gs


def _unsolved_words(conn: models.ConnectionsState, key: models.ConnectionsKey) -> List[str]:
    solved = conn.solved_words()
    return [w for w in game.board_words(key.groups) if game.normalize_word(w) not in solved]


# ---- Connections ----

def _check_guess_words(words: Sequence[str], key: models.ConnectionsKey) -> None:
    normalized = [game.normalize_word(w) for w in words]
    if len(normalized) != game.CONNECTIONS_GROUP_SIZE or len(set(normalized)) != len(normalized):
        raise InvalidGuessError(f"Must guess exactly {game.CONNECTIONS_GROUP_SIZE} different words")
    on_board = {game.normalize_word(w) for w in game.board_words(key.groups)}
    if not set(normalized) <= on_board:
        raise InvalidGuessError("All guessed words must be on the board")


def submit_grouping_guess(db: Session, player_id: int, words: Sequence[str], provider=None) -> models.GuessResult:
    key = puzzles.require_key(_provider(db, provider), PuzzleKind.CONNECTIONS)
    _check_guess_words(words, key)
    stamped = False
    with _locked_session(db, player_id) as gs:
        conn, cw = gs.connections_state(), gs.crossword_state()
        outcome = None
        group = None
        if not conn.is_terminal:
            outcome = game.evaluate_grouping_guess(words, conn.solved_labels(), key.groups)

        if outcome is not None and outcome.verdict is GroupingVerdict.MATCH:
            group = key.groups[outcome.group_index]
            conn.solved_groups.append(group)
            solved = conn.solved_words()
            conn.word_order = [w for w in conn.word_order if game.normalize_word(w) not in solved]
            if len(conn.solved_groups) >= len(key.groups):
                conn.completed = True
        elif outcome is not None and outcome.verdict in (GroupingVerdict.NEAR_MISS, GroupingVerdict.NO_MATCH):
            conn.mistakes = min(conn.mistakes + 1, game.MAX_CONNECTIONS_MISTAKES)
            if conn.mistakes >= game.MAX_CONNECTIONS_MISTAKES:
                conn.failed = True
                gs.failed = True

        if outcome is not None and outcome.verdict is not GroupingVerdict.ALREADY_SOLVED:
            gs.put_connections_state(conn)
            stamped = _stamp_if_due(gs, conn, cw, clock.now(), failure=conn.failed)
            db.add(gs)
            logger.info(
                "connections_guess",
                extra={"player_id": player_id, "verdict": outcome.verdict.value, "mistakes": conn.mistakes},
            )

        result = models.GuessResult(
            matched=group is not None,
            group=group,
            mistakes=conn.mistakes,
            failed=conn.failed,
            near_miss=outcome is not None and outcome.verdict is GroupingVerdict.NEAR_MISS,
            already_solved=outcome is not None and outcome.verdict is GroupingVerdict.ALREADY_SOLVED,
            session_finished=conn.is_terminal and cw.is_terminal,
            total_time_ms=gs.total_time_ms,
        )
    if stamped:
        _after_stamp(player_id, result.total_time_ms, conn.failed or cw.failed)
    return result


def reorder_words(db: Session, player_id: int, words: Sequence[str], provider=None) -> List[str]:
    """Persist the player's tile order for the words still on the board."""
    key = puzzles.require_key(_provider(db, provider), PuzzleKind.CONNECTIONS)
    with _locked_session(db, player_id) as gs:
        conn = gs.connections_state()
        if conn.is_terminal:
            raise InvalidGuessError("Connections already finished")
        if not game.is_valid_word_order(words, _unsolved_words(conn, key)):
            raise InvalidGuessError("Words do not match current unsolved set")
        conn.word_order = [game.normalize_word(w) for w in words]
        gs.put_connections_state(conn)
        db.add(gs)
        order = list(conn.word_order)
    return order


# ---- Crossword ----

def submit_crossword_grid(db: Session, player_id: int, grid, provider=None) -> models.CrosswordResult:
    """Check a full grid submission and charge one attempt.

    Cells confirmed correct on any earlier attempt stay cemented: they are
    never reported wrong again, whatever this grid holds for them.
    """
    key = puzzles.require_key(_provider(db, provider), PuzzleKind.CROSSWORD)
    stamped = False
    with _locked_session(db, player_id) as gs:
        conn, cw = gs.connections_state(), gs.crossword_state()
        wrong: List[game.Cell] = []
        if not cw.is_terminal:
            outcome = game.evaluate_crossword_grid(grid, key.grid)
            prior = set(cw.cemented())
            wrong = [c for c in outcome.wrong_cells if c not in prior]
            cemented = game.merge_cemented(prior, outcome.correct_cells)
            cw.attempts += 1
            cw.cemented_cells = models.cells_from(cemented)
            cw.current_grid = game.restore_cemented(grid, key.grid, cemented)
            if not wrong:
                cw.completed = True
            elif cw.attempts >= game.MAX_CROSSWORD_ATTEMPTS:
                cw.failed = True
                gs.failed = True
            gs.put_crossword_state(cw)
            stamped = _stamp_if_due(gs, conn, cw, clock.now(), failure=cw.failed)
            db.add(gs)
            logger.info(
                "crossword_submit",
                extra={"player_id": player_id, "attempts": cw.attempts, "verdict": cw.status.value},
            )

        result = models.CrosswordResult(
            all_correct=cw.completed,
            wrong_cells=models.cells_from(wrong),
            cemented_cells=list(cw.cemented_cells),
            attempts=cw.attempts,
            failed=cw.failed,
            session_finished=conn.is_terminal and cw.is_terminal,
            total_time_ms=gs.total_time_ms,
        )
    if stamped:
        _after_stamp(player_id, result.total_time_ms, conn.failed or cw.failed)
    return result


def give_up_crossword(db: Session, player_id: int) -> models.GiveUpResult:
    """Fail the crossword on purpose. The clock stops now.

    A no-op once the session is stamped or the crossword is already over.
    """
    stamped = False
    with _locked_session(db, player_id) as gs:
        conn, cw = gs.connections_state(), gs.crossword_state()
        gave_up = gs.completed_at is None and not cw.is_terminal
        if gave_up:
            cw.failed = True
            cw.completed = False
            gs.put_crossword_state(cw)
            gs.failed = True
            stamped = _stamp_if_due(gs, conn, cw, clock.now(), failure=True)
            db.add(gs)
            logger.info("crossword_give_up", extra={"player_id": player_id})
        result = models.GiveUpResult(gave_up=gave_up, total_time_ms=gs.total_time_ms)
    if stamped:
        _after_stamp(player_id, result.total_time_ms, True)
    return result


def autocomplete_puzzle(db: Session, player_id: int, kind, provider=None) -> dict:
    """Solve a puzzle with its own answer key. Used by the dev-only endpoint."""
    kind = PuzzleKind(kind)
    provider = _provider(db, provider)
    start_puzzle(db, player_id, kind, provider)
    key = puzzles.require_key(provider, kind)
    if kind == PuzzleKind.CONNECTIONS:
        result = None
        for group in key.groups:
            result = submit_grouping_guess(db, player_id, group.words, provider)
        return result.model_dump() if result else {}
    return submit_crossword_grid(db, player_id, key.grid, provider).model_dump()


# ---- Views ----

def elapsed_ms(gs: models.GameSession, now: Optional[datetime] = None) -> Optional[int]:
    """Timer reading: frozen once stamped, otherwise computed from now."""
    if gs.started_at is None:
        return None
    if gs.total_time_ms is not None:
        return gs.total_time_ms
    return clock.elapsed_ms(gs.started_at, now or clock.now())


def session_view(gs: Optional[models.GameSession]) -> Optional[dict]:
    if gs is None:
        return None
    conn, cw = gs.connections_state(), gs.crossword_state()
    return {
        'id': gs.id,
        'phase': gs.phase.value,
        'started_at': clock.as_utc(gs.started_at).isoformat() if gs.started_at else None,
        'completed_at': clock.as_utc(gs.completed_at).isoformat() if gs.completed_at else None,
        'first_puzzle': gs.first_puzzle,
        'total_time_ms': gs.total_time_ms,
        'elapsed_ms': elapsed_ms(gs),
        'failed': gs.failed,
        'connections_state': conn.model_dump(exclude={'word_order'}) | {'status': conn.status.value},
        'crossword_state': cw.model_dump() | {'status': cw.status.value},
    }


def puzzle_view(gs: models.GameSession, kind, key) -> dict:
    """What a player may see of a puzzle: no answers, their own progress."""
    kind = PuzzleKind(kind)
    if kind == PuzzleKind.CONNECTIONS:
        conn = gs.connections_state()
        unsolved = _unsolved_words(conn, key)
        order = [w for w in conn.word_order if game.normalize_word(w) not in conn.solved_words()]
        return {
            'words': order if game.is_valid_word_order(order, unsolved) else unsolved,
            'num_groups': len(key.groups),
            'solved_groups': [g.model_dump() for g in conn.solved_groups],
            'mistakes': conn.mistakes,
            'status': conn.status.value,
        }
    cw = gs.crossword_state()
    return {
        'size': key.size,
        'grid': game.blank_grid(key.grid),
        'clues': key.public_clues(),
        'current_grid': cw.current_grid,
        'cemented_cells': [c.model_dump() for c in cw.cemented_cells],
        'attempts': cw.attempts,
        'status': cw.status.value,
    }
