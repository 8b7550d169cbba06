import pytest
from fastapi.testclient import TestClient

from puzzlerace.config import Config
from puzzlerace.main import app
from conftest import CONNECTIONS, CROSSWORD

API = "/api/v1"


@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.setattr(Config, "ADMIN_API_KEY", "letmein")
    monkeypatch.setattr(Config, "ADMIN_SESSION_SECRET", "admin-test-secret")
    return TestClient(app)


@pytest.fixture
def admin(client):
    r = client.post(f"{API}/admin/login", json={"password": "letmein"})
    assert r.status_code == 200
    assert r.json()["expires_in"] == Config.ADMIN_TOKEN_TTL_SECONDS
    return {"X-Admin-Key": f"Bearer {r.json()['admin_token']}"}


def test_login_rejects_wrong_password(client):
    assert client.post(f"{API}/admin/login", json={"password": "nope"}).status_code == 401


def test_admin_routes_require_token(client):
    assert client.get(f"{API}/admin/lock").status_code == 401
    assert client.get(f"{API}/admin/lock", headers={"X-Admin-Key": "letmein"}).status_code == 401


def test_lock_toggle(client, admin):
    assert client.get(f"{API}/admin/lock", headers=admin).json() == {"locked": False}
    assert client.post(f"{API}/admin/lock", json={"locked": True}, headers=admin).json() == {"locked": True}
    assert client.get(f"{API}/admin/lock", headers=admin).json() == {"locked": True}


def test_set_and_read_current_puzzle(client, admin):
    r = client.post(f"{API}/admin/current-puzzle/connections", json=CONNECTIONS, headers=admin)
    assert r.status_code == 200
    bad = {"groups": CONNECTIONS["groups"][:3]}
    assert client.post(f"{API}/admin/current-puzzle/connections", json=bad, headers=admin).status_code == 422

    current = client.get(f"{API}/admin/current-puzzle", headers=admin).json()
    assert current["connections_data"]["groups"][0]["words"][2] == "NAVY PIER"
    assert current["crossword_data"] is None

    r = client.post(f"{API}/admin/current-puzzle/crossword", json=CROSSWORD, headers=admin)
    assert r.status_code == 200
    current = client.get(f"{API}/admin/current-puzzle", headers=admin).json()
    # admins see the answers
    assert current["crossword_data"]["clues"]["across"][0]["answer"] == "HEART"


def test_archive_cycle(client, admin):
    r = client.post(f"{API}/admin/archive", headers=admin)
    assert r.status_code == 400
    assert r.json()["code"] == "incomplete_puzzle"

    client.post(f"{API}/admin/current-puzzle/connections", json=CONNECTIONS, headers=admin)
    client.post(f"{API}/admin/current-puzzle/crossword", json=CROSSWORD, headers=admin)
    r = client.post(f"{API}/game/register", json={"name": "Pat", "region": "IL", "handle": "pat"})
    token = {"X-Session-Token": r.json()["session_token"]}

    players = client.get(f"{API}/admin/players", headers=admin).json()["players"]
    assert [p["handle"] for p in players] == ["pat"]

    r = client.post(f"{API}/admin/archive", headers=admin)
    assert r.status_code == 200
    archive = r.json()["archive"]
    assert archive["leaderboard"] == []
    assert archive["archived_at"].endswith("+00:00")

    assert client.get(f"{API}/admin/players", headers=admin).json()["players"] == []
    assert client.get(f"{API}/game/state", headers=token).status_code == 401

    listed = client.get(f"{API}/admin/archives", headers=admin).json()["archives"]
    assert [a["id"] for a in listed] == [archive["id"]]
    detail = client.get(f"{API}/admin/archives/{archive['id']}", headers=admin).json()["archive"]
    assert detail["connections_data"]["groups"][0]["label"] == "Chicago landmarks"
    assert client.get(f"{API}/admin/archives/999", headers=admin).status_code == 404


def test_cache_stats_is_admin_only(client, admin):
    assert client.get(f"{API}/cache/stats").status_code == 401
    assert client.get(f"{API}/cache/stats", headers=admin).json()["status"] == "ok"
