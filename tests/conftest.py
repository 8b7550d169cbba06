import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `puzzlerace` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from puzzlerace import crud, models, puzzles  # noqa: E402
from puzzlerace.init_db import init_db  # noqa: E402


CONNECTIONS = {
    "groups": [
        {"label": "Chicago landmarks", "words": ["Bean", "Wrigley", "Navy Pier", "Willis"], "difficulty": 1},
        {"label": "Deep dish toppings", "words": ["Sausage", "Pepperoni", "Onion", "Peppers"], "difficulty": 2},
        {"label": "Lake ___", "words": ["Shore", "Front", "Effect", "Michigan"], "difficulty": 3},
        {"label": "Windy", "words": ["Gusty", "Breezy", "Blustery", "Squally"], "difficulty": 4},
    ]
}

# HEART / block pattern with a single black square
CROSSWORD = {
    "size": 5,
    "grid": [
        ["H", "E", "A", "R", "T"],
        ["A", "L", "L", "O", "W"],
        ["R", "O", "B", "O", "T"],
        ["E", "P", "S", "M", None],
        ["S", "E", "T", "S", "A"],
    ],
    "clues": {
        "across": [
            {"number": 1, "clue": "Blood pump", "row": 0, "col": 0, "direction": "across", "answer": "HEART"},
            {"number": 6, "clue": "Permit", "row": 1, "col": 0, "direction": "across", "answer": "ALLOW"},
        ],
        "down": [
            {"number": 1, "clue": "Quick rabbits", "row": 0, "col": 0, "direction": "down", "answer": "HARES"},
        ],
    },
}


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    # Clear in-memory rate limiter and cache between tests to avoid cross-test flakiness
    import puzzlerace.main as app_main
    from puzzlerace import cache
    app_main._RATE_LIMIT_STORE.clear()
    cache.get_cache().clear()
    yield


@pytest.fixture
def connections_key():
    return models.ConnectionsKey.model_validate(CONNECTIONS)


@pytest.fixture
def crossword_key():
    return models.CrosswordKey.model_validate(CROSSWORD)


@pytest.fixture
def provider(connections_key, crossword_key):
    return puzzles.StaticPuzzleProvider(connections_key, crossword_key)


@pytest.fixture
def engine(tmp_path):
    engine = init_db(f"sqlite:///{tmp_path / 'game.db'}")
    crud.engine = engine
    yield engine
    engine.dispose()