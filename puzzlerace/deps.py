from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlmodel import Session

from . import crud


def get_session():
    # simple dependency that yields a session
    with Session(crud.engine) as session:
        yield session


def current_player_id(
    x_session_token: Optional[str] = Header(None),
    session: Session = Depends(get_session),
) -> int:
    if not x_session_token:
        raise HTTPException(status_code=401, detail="missing session token")
    pid = crud.verify_player_token(session, x_session_token)
    if pid is None:
        raise HTTPException(status_code=401, detail="invalid session token")
    return pid


def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    token = (x_admin_key or '').strip()
    if token.lower().startswith('bearer '):
        token = token[7:].strip()
    if not token or not crud.verify_admin_token(token):
        raise HTTPException(status_code=401, detail="admin authentication required")


def game_open(session: Session = Depends(get_session)) -> None:
    """Refuse game mutations while an admin has locked the game."""
    if crud.get_game_locked(session):
        raise HTTPException(status_code=403, detail="game is locked")
