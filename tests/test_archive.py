import threading

import pytest
from sqlmodel import Session, select

from puzzlerace import archive, cache, crud, models, puzzles, session_engine
from puzzlerace.errors import IncompletePuzzleError


def _configure(s, connections_key, crossword_key):
    puzzles.set_current_connections(s, connections_key)
    puzzles.set_current_crossword(s, crossword_key)


def _finish(s, handle, connections_key, crossword_key, give_up=False):
    p = crud.register_player(s, handle.title(), "IL", handle)
    session_engine.start_puzzle(s, p.id, "connections")
    for g in connections_key.groups:
        session_engine.submit_grouping_guess(s, p.id, g.words)
    if give_up:
        session_engine.give_up_crossword(s, p.id)
    else:
        session_engine.submit_crossword_grid(s, p.id, [list(r) for r in crossword_key.grid])
    return p.id


def _count(s, model):
    return len(s.exec(select(model)).all())


def test_archive_requires_both_keys(engine, connections_key):
    with Session(engine) as s:
        puzzles.set_current_connections(s, connections_key)
        crud.register_player(s, "Ann", "IL", "ann")
        with pytest.raises(IncompletePuzzleError):
            archive.run_archive_and_reset(s)
        assert _count(s, models.Player) == 1
        assert _count(s, models.PuzzleArchive) == 0


def test_archive_snapshots_and_resets(engine, connections_key, crossword_key):
    with Session(engine) as s:
        _configure(s, connections_key, crossword_key)
        _finish(s, "fast", connections_key, crossword_key)
        _finish(s, "quitter", connections_key, crossword_key, give_up=True)
        p = crud.register_player(s, "Idle", "IL", "idle")
        old_token = crud.sign_player_token(s, p.id)
        cache.cache_leaderboard([{"stale": True}])

        a = archive.run_archive_and_reset(s)

        assert a.player_count == 1
        assert [e["handle"] for e in a.leaderboard()] == ["fast"]
        assert a.to_dict()["connections_data"]["groups"][0]["label"] == "Chicago landmarks"
        assert a.to_dict()["archived_at"].endswith("+00:00")
        assert _count(s, models.Player) == 0
        assert _count(s, models.GameSession) == 0
        assert _count(s, models.PuzzleArchive) == 1
        assert crud.verify_player_token(s, old_token) is None
        assert cache.get_cached_leaderboard() is None

        current = puzzles.get_current_puzzle(s)
        assert current["connections_data"] is None
        assert current["crossword_data"] is None

        # puzzle already cleared: a second run fails without side effects
        with pytest.raises(IncompletePuzzleError):
            archive.run_archive_and_reset(s)
        assert _count(s, models.PuzzleArchive) == 1


def test_archive_failure_rolls_everything_back(engine, connections_key, crossword_key, monkeypatch):
    with Session(engine) as s:
        _configure(s, connections_key, crossword_key)
        _finish(s, "fast", connections_key, crossword_key)

        def boom(db):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(puzzles, "clear_current_puzzle", boom)
        with pytest.raises(RuntimeError):
            archive.run_archive_and_reset(s)

    with Session(engine) as s:
        assert _count(s, models.Player) == 1
        assert _count(s, models.GameSession) == 1
        assert _count(s, models.PuzzleArchive) == 0
        assert puzzles.get_current_puzzle(s)["connections_data"] is not None


def test_list_and_get_archives(engine, connections_key, crossword_key):
    with Session(engine) as s:
        for _ in range(2):
            _configure(s, connections_key, crossword_key)
            archive.run_archive_and_reset(s)
        listed = archive.list_archives(s)
        assert len(listed) == 2
        assert listed[0]["id"] > listed[1]["id"]
        assert archive.get_archive(s, listed[0]["id"])["leaderboard"] == []
        assert archive.get_archive(s, 12345) is None


def test_concurrent_resets_archive_once(engine, connections_key, crossword_key):
    with Session(engine) as s:
        _configure(s, connections_key, crossword_key)
        _finish(s, "fast", connections_key, crossword_key)

    barrier = threading.Barrier(3)
    results, errors = [], []

    def worker():
        try:
            barrier.wait()
            with Session(engine) as s:
                results.append(archive.run_archive_and_reset(s).id)
        except Exception as e:  # collected and asserted on below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert len(results) == 1
    assert len(errors) == 2
    assert all(isinstance(e, IncompletePuzzleError) for e in errors)
    with Session(engine) as s:
        assert _count(s, models.PuzzleArchive) == 1
        assert _count(s, models.Player) == 0
        assert archive.get_archive(s, results[0])["leaderboard"][0]["handle"] == "fast"
