import enum
import random
from typing import Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple


MAX_CONNECTIONS_MISTAKES = 4
MAX_CROSSWORD_ATTEMPTS = 3
CONNECTIONS_GROUP_SIZE = 4
CONNECTIONS_NUM_GROUPS = 4
CROSSWORD_SIZE = 5

Cell = Tuple[int, int]
Grid = List[List[Optional[str]]]


class PuzzleKind(str, enum.Enum):
    CONNECTIONS = 'connections'
    CROSSWORD = 'crossword'


class GroupingVerdict(str, enum.Enum):
    MATCH = 'match'
    NEAR_MISS = 'near_miss'
    NO_MATCH = 'no_match'
    ALREADY_SOLVED = 'already_solved'


class GroupingOutcome(NamedTuple):
    verdict: GroupingVerdict
    # index into the answer key's groups, when the verdict names one
    group_index: Optional[int] = None


class GridOutcome(NamedTuple):
    wrong_cells: List[Cell]
    correct_cells: List[Cell]

    @property
    def all_correct(self) -> bool:
        return not self.wrong_cells


def normalize_word(word) -> str:
    return (word or '').strip().upper() if isinstance(word, str) else ''


def word_key(words: Iterable[str]) -> Tuple[str, ...]:
    # case and order insensitive identity of a set of tiles
    return tuple(sorted(normalize_word(w) for w in words))


def board_words(groups) -> List[str]:
    words: List[str] = []
    for g in groups:
        words.extend(g.words)
    return words


def evaluate_grouping_guess(words: Sequence[str], solved_labels: Set[str], groups) -> GroupingOutcome:
    """Classify four submitted words against the answer key.

    A guess equal to a group that is already in ``solved_labels`` is reported
    as ALREADY_SOLVED and never re-matched. A near miss is exactly three of
    the four words belonging to a single unsolved group.
    """
    guess = word_key(words)
    for idx, group in enumerate(groups):
        if word_key(group.words) == guess:
            if group.label in solved_labels:
                return GroupingOutcome(GroupingVerdict.ALREADY_SOLVED, idx)
            return GroupingOutcome(GroupingVerdict.MATCH, idx)

    guess_set = set(guess)
    for idx, group in enumerate(groups):
        if group.label in solved_labels:
            continue
        overlap = guess_set & {normalize_word(w) for w in group.words}
        if len(overlap) == CONNECTIONS_GROUP_SIZE - 1:
            return GroupingOutcome(GroupingVerdict.NEAR_MISS, idx)
    return GroupingOutcome(GroupingVerdict.NO_MATCH)


def _letter(grid, row: int, col: int) -> str:
    try:
        val = grid[row][col]
    except (IndexError, TypeError, KeyError):
        return ''
    return normalize_word(val)


def evaluate_crossword_grid(submitted, answer: Grid) -> GridOutcome:
    """Compare a submitted grid with the answer, cell by cell.

    Block cells (None in the answer) are skipped. Missing or ragged rows in
    the submission count as empty cells. The result describes this
    submission only; cementing across submissions is the caller's job.
    """
    wrong: List[Cell] = []
    correct: List[Cell] = []
    for r, row in enumerate(answer):
        for c, expected in enumerate(row):
            if expected is None:
                continue
            if _letter(submitted, r, c) == normalize_word(expected):
                correct.append((r, c))
            else:
                wrong.append((r, c))
    return GridOutcome(wrong, correct)


def merge_cemented(prior: Iterable[Cell], correct: Iterable[Cell]) -> List[Cell]:
    return sorted({tuple(c) for c in prior} | {tuple(c) for c in correct})


def restore_cemented(submitted, answer: Grid, cemented: Iterable[Cell]) -> Grid:
    """Return the submitted grid with every cemented cell set back to its answer letter."""
    locked = {tuple(c) for c in cemented}
    out: Grid = []
    for r, row in enumerate(answer):
        out_row: List[Optional[str]] = []
        for c, expected in enumerate(row):
            if expected is None:
                out_row.append(None)
            elif (r, c) in locked:
                out_row.append(normalize_word(expected))
            else:
                out_row.append(_letter(submitted, r, c))
        out.append(out_row)
    return out


def blank_grid(answer: Grid) -> Grid:
    return [[None if cell is None else '' for cell in row] for row in answer]


def shuffled_words(words: Sequence[str], rng: Optional[random.Random] = None) -> List[str]:
    rng = rng or random.Random()
    out = list(words)
    rng.shuffle(out)
    return out


def is_valid_word_order(order: Sequence[str], expected: Sequence[str]) -> bool:
    if len(order) != len(expected):
        return False
    return word_key(order) == word_key(expected)
