import copy

import pytest
from pydantic import ValidationError

from puzzlerace import models
from conftest import CONNECTIONS, CROSSWORD


def test_connections_key_normalizes_words(connections_key):
    assert connections_key.groups[0].words == ["BEAN", "WRIGLEY", "NAVY PIER", "WILLIS"]


def test_connections_key_rejects_duplicates():
    data = copy.deepcopy(CONNECTIONS)
    data["groups"][1]["words"][0] = "bean"
    with pytest.raises(ValidationError):
        models.ConnectionsKey.model_validate(data)


def test_connections_key_requires_four_groups():
    data = copy.deepcopy(CONNECTIONS)
    data["groups"].pop()
    with pytest.raises(ValidationError):
        models.ConnectionsKey.model_validate(data)


def test_crossword_key_shape_and_letters():
    data = copy.deepcopy(CROSSWORD)
    data["grid"][0][0] = "h"
    assert models.CrosswordKey.model_validate(data).grid[0][0] == "H"

    data["grid"][0][0] = "HH"
    with pytest.raises(ValidationError):
        models.CrosswordKey.model_validate(data)

    data = copy.deepcopy(CROSSWORD)
    data["grid"].pop()
    with pytest.raises(ValidationError):
        models.CrosswordKey.model_validate(data)


def test_public_clues_hide_answers(crossword_key):
    clues = crossword_key.public_clues()
    assert clues["across"][0]["clue"] == "Blood pump"
    assert all("answer" not in c for c in clues["across"] + clues["down"])


def test_sub_state_status():
    conn = models.ConnectionsState()
    assert conn.status is models.PuzzleStatus.ACTIVE and not conn.is_terminal
    conn.failed = True
    assert conn.status is models.PuzzleStatus.FAILED and conn.is_terminal

    cw = models.CrosswordState(completed=True)
    assert cw.status is models.PuzzleStatus.SOLVED


def test_session_phase():
    gs = models.GameSession(player_id=1)
    assert gs.phase is models.SessionPhase.NOT_STARTED
    assert gs.connections_state().mistakes == 0
    gs.put_crossword_state(models.CrosswordState(completed=True))
    assert gs.crossword_completed is True
