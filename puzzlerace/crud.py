import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from . import clock, models
from .config import Config
from .init_db import GAME_LOCKED_KEY
from .logging_utils import get_logger

logger = get_logger("puzzlerace.crud")

engine = None


# ---- Player credentials ----

def _player_sig(player: models.Player) -> str:
    key = f"{Config.SESSION_SECRET}:{player.token_secret or ''}"
    return hmac.new(key.encode(), str(player.id).encode(), hashlib.sha256).hexdigest()


def sign_player_token(db_session: Session, pid: int) -> Optional[str]:
    """Sign a player id into the opaque "pid.sig" credential.

    Returns None if the player doesn't exist.
    """
    if pid is None:
        return None
    player = db_session.get(models.Player, pid)
    if player is None:
        return None
    return f"{pid}.{_player_sig(player)}"


def verify_player_token(db_session: Session, token: str) -> Optional[int]:
    """Return the player id for a valid credential, otherwise None.

    Players are deleted by the weekly reset, which invalidates every
    credential issued before it.
    """
    try:
        pid_s, sig = (token or '').rsplit('.', 1)
        pid = int(pid_s)
    except ValueError:
        return None
    player = db_session.get(models.Player, pid)
    if player is None:
        return None
    if not hmac.compare_digest(_player_sig(player), sig):
        return None
    return pid


def rotate_player_secret(session: Session, pid: int) -> Optional[str]:
    player = session.get(models.Player, pid)
    if not player:
        return None
    player.token_secret = uuid.uuid4().hex
    session.add(player)
    session.commit()
    session.refresh(player)
    return player.token_secret


# ---- Admin credentials ----

def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode()


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + '=' * (-len(text) % 4))


def _admin_sig(payload_b64: str) -> str:
    digest = hmac.new(Config.ADMIN_SESSION_SECRET.encode(), payload_b64.encode(), hashlib.sha256).digest()
    return _b64(digest)


def check_admin_password(password: str) -> bool:
    if not Config.ADMIN_API_KEY or not isinstance(password, str):
        return False
    return hmac.compare_digest(password.encode(), Config.ADMIN_API_KEY.encode())


def make_admin_token(now: Optional[float] = None) -> str:
    issued = int(now if now is not None else time.time())
    payload = {
        'iat': issued,
        'exp': issued + Config.ADMIN_TOKEN_TTL_SECONDS,
        'nonce': secrets.token_hex(16),
    }
    payload_b64 = _b64(json.dumps(payload).encode())
    return f"{payload_b64}.{_admin_sig(payload_b64)}"


def verify_admin_token(token: str, now: Optional[float] = None) -> bool:
    try:
        payload_b64, sig = (token or '').split('.', 1)
    except ValueError:
        return False
    if not hmac.compare_digest(_admin_sig(payload_b64), sig):
        return False
    try:
        payload = json.loads(_unb64(payload_b64))
    except ValueError:
        return False
    exp = payload.get('exp') if isinstance(payload, dict) else None
    if not isinstance(exp, int):
        return False
    return exp > int(now if now is not None else time.time())


# ---- Players ----

def normalize_handle(handle: str) -> str:
    return (handle or '').strip().lstrip('@').lower()


def get_player_by_handle(session: Session, handle: str):
    return session.exec(
        select(models.Player).where(models.Player.handle == normalize_handle(handle))
    ).first()


def register_player(session: Session, name: str, region: str, handle: str) -> Optional[models.Player]:
    """Create a player, or return None when the handle is already taken."""
    if get_player_by_handle(session, handle):
        return None
    p = models.Player(
        name=name.strip(),
        region=region.strip(),
        handle=normalize_handle(handle),
        token_secret=uuid.uuid4().hex,
        created_at=clock.now(),
    )
    session.add(p)
    try:
        session.commit()
    except IntegrityError:
        # lost a race with another registration for the same handle
        session.rollback()
        return None
    session.refresh(p)
    logger.info("player_registered", extra={"player_id": p.id})
    return p


def get_current_players(session: Session) -> List[dict]:
    rows = session.exec(
        select(models.Player, models.GameSession)
        .join(models.GameSession, models.GameSession.player_id == models.Player.id, isouter=True)
        .order_by(col(models.Player.created_at))
    ).all()
    players = []
    for p, gs in rows:
        players.append({
            'id': p.id,
            'name': p.name,
            'region': p.region,
            'handle': p.handle,
            'started_at': _iso(gs.started_at) if gs else None,
            'completed_at': _iso(gs.completed_at) if gs else None,
            'total_time_ms': gs.total_time_ms if gs else None,
            'failed': gs.failed if gs else False,
            'connections_completed': gs.connections_completed if gs else False,
            'crossword_completed': gs.crossword_completed if gs else False,
        })
    return players


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return clock.as_utc(ts).isoformat() if ts else None


# ---- Settings ----

def get_game_locked(session: Session) -> bool:
    row = session.get(models.GameSetting, GAME_LOCKED_KEY)
    if row is None:
        return False
    try:
        value = json.loads(row.value_json or '{}')
    except ValueError:
        return False
    return isinstance(value, dict) and value.get('locked') is True


def set_game_locked(session: Session, locked: bool) -> bool:
    row = session.get(models.GameSetting, GAME_LOCKED_KEY)
    if row is None:
        row = models.GameSetting(key=GAME_LOCKED_KEY)
    row.value_json = json.dumps({'locked': bool(locked)})
    row.updated_at = datetime.now(timezone.utc)
    session.add(row)
    session.commit()
    logger.info("game_lock_changed", extra={"locked": bool(locked)})
    return bool(locked)


# ---- Leaderboard ----

def get_leaderboard(session: Session, limit: Optional[int] = None) -> List[models.LeaderboardEntry]:
    """Finished, unfailed sessions with both puzzles solved, fastest first.

    Ties on total time go to whoever finished earlier. Ranks are 1..N.
    If limit is None, return all rows; otherwise return up to limit.
    """
    stmt = (
        select(
            models.Player.name,
            models.Player.region,
            models.Player.handle,
            models.GameSession.total_time_ms,
        )
        .join(models.GameSession, models.GameSession.player_id == models.Player.id)
        .where(col(models.GameSession.completed_at).is_not(None))
        .where(col(models.GameSession.total_time_ms).is_not(None))
        .where(models.GameSession.failed == False)  # noqa: E712
        .where(models.GameSession.connections_completed == True)  # noqa: E712
        .where(models.GameSession.crossword_completed == True)  # noqa: E712
        .order_by(col(models.GameSession.total_time_ms), col(models.GameSession.completed_at))
    )
    if isinstance(limit, int) and limit > 0:
        stmt = stmt.limit(limit)
    rows = session.exec(stmt).all()
    return [
        models.LeaderboardEntry(rank=i, name=name, region=region, handle=handle, total_time_ms=int(ms))
        for i, (name, region, handle, ms) in enumerate(rows, start=1)
    ]
