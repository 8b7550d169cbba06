from sqlmodel import Session

from puzzlerace import crud
from puzzlerace.config import Config


def test_player_token_sign_and_verify(engine):
    with Session(engine) as s:
        p = crud.register_player(s, "Bob", "IL", "@Bob_Builds")
        assert p is not None and p.id is not None
        assert p.handle == "bob_builds"
        pid = int(p.id)
        token = crud.sign_player_token(s, pid)
        assert token and "." in token
        assert crud.verify_player_token(s, token) == pid

        # Tamper token -> verify fails
        bad = token.split('.')[0] + '.deadbeef'
        assert crud.verify_player_token(s, bad) is None
        assert crud.verify_player_token(s, "garbage") is None
        assert crud.verify_player_token(s, "") is None
        assert crud.sign_player_token(s, 999) is None


def test_rotate_invalidates_old_token(engine):
    with Session(engine) as s:
        p = crud.register_player(s, "Carol", "WI", "carol")
        tok = crud.sign_player_token(s, p.id)
        new_secret = crud.rotate_player_secret(s, p.id)
        assert isinstance(new_secret, str) and len(new_secret) > 0
        assert crud.verify_player_token(s, tok) is None
        assert crud.verify_player_token(s, crud.sign_player_token(s, p.id)) == p.id
        assert crud.rotate_player_secret(s, 999) is None


def test_duplicate_handle_rejected(engine):
    with Session(engine) as s:
        assert crud.register_player(s, "Dan", "IL", "dan") is not None
        assert crud.register_player(s, "Other Dan", "IN", "@DAN") is None
        assert crud.get_player_by_handle(s, " dan ").name == "Dan"


def test_admin_password_and_token(monkeypatch):
    monkeypatch.setattr(Config, "ADMIN_API_KEY", "hunter2")
    monkeypatch.setattr(Config, "ADMIN_SESSION_SECRET", "admin-secret")
    monkeypatch.setattr(Config, "ADMIN_TOKEN_TTL_SECONDS", 60)
    assert crud.check_admin_password("hunter2")
    assert not crud.check_admin_password("hunter3")

    token = crud.make_admin_token(now=1000)
    assert crud.verify_admin_token(token, now=1030)
    assert not crud.verify_admin_token(token, now=1060)
    assert not crud.verify_admin_token(token + "x", now=1030)
    assert not crud.verify_admin_token("nodot", now=1030)

    monkeypatch.setattr(Config, "ADMIN_SESSION_SECRET", "rotated")
    assert not crud.verify_admin_token(token, now=1030)


def test_admin_password_unset_refuses_everything(monkeypatch):
    monkeypatch.setattr(Config, "ADMIN_API_KEY", "")
    assert not crud.check_admin_password("")
    assert not crud.check_admin_password("anything")


def test_game_lock_roundtrip(engine):
    with Session(engine) as s:
        assert crud.get_game_locked(s) is False
        assert crud.set_game_locked(s, True) is True
        assert crud.get_game_locked(s) is True
        crud.set_game_locked(s, False)
        assert crud.get_game_locked(s) is False


def test_current_players_include_unstarted(engine):
    with Session(engine) as s:
        crud.register_player(s, "Eve", "IL", "eve")
        players = crud.get_current_players(s)
        assert len(players) == 1
        assert players[0]["handle"] == "eve"
        assert players[0]["started_at"] is None
        assert players[0]["failed"] is False
