from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from starlette.middleware.base import BaseHTTPMiddleware

import logging
import time
import uuid

from . import archive, cache, clock, crud, game, models, puzzles, session_engine
from .config import Config
from .deps import current_player_id, game_open, get_session, require_admin
from .errors import GameError
from .game import PuzzleKind
from .logging_utils import setup_logging, get_logger, request_id_ctx


# Rate limiting - store last request times per IP and bucket
_RATE_LIMIT_STORE: dict = {}

def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60, bucket: str = "") -> bool:
    """
    Simple in-memory rate limiting. Returns True if request is allowed, False if rate limited.
    Default: 30 requests per 60 seconds per IP address.
    """
    client_ip = request.client.host if request.client else "unknown"
    key = f"{bucket}:{client_ip}"
    current_time = time.time()

    # Clean up old entries (older than window)
    cutoff_time = current_time - window_seconds
    _RATE_LIMIT_STORE[key] = [
        req_time for req_time in _RATE_LIMIT_STORE.get(key, [])
        if req_time > cutoff_time
    ]

    if len(_RATE_LIMIT_STORE[key]) >= max_requests:
        return False

    _RATE_LIMIT_STORE[key].append(current_time)
    return True

def rate_limit_dependency(max_requests: int = 30, window_seconds: int = 60, bucket: str = ""):
    """Create a dependency function that raises HTTP 429 if rate limited"""
    def dependency(request: Request):
        if not check_rate_limit(request, max_requests, window_seconds, bucket):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds."
            )
    return dependency


guess_limit = rate_limit_dependency(max_requests=30, window_seconds=60, bucket="guess")
register_limit = rate_limit_dependency(max_requests=5, window_seconds=15 * 60, bucket="register")
admin_login_limit = rate_limit_dependency(max_requests=10, window_seconds=15 * 60, bucket="admin_login")


setup_logging(logging.INFO)
logger = get_logger("puzzlerace")
app = FastAPI(title="Puzzle Race")

API = "/api/v1"

# Security headers & Content Security Policy
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        # JSON API only: nothing to load, nothing to frame
        response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('Cache-Control', 'no-store')
        response.headers.setdefault('Strict-Transport-Security', 'max-age=31536000; includeSubDomains')
        return response

app.add_middleware(SecurityHeadersMiddleware)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        ua = request.headers.get("user-agent", "-")
        response = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                    "user_agent": ua,
                },
            )
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Accept",
        "Content-Type",
        "X-Session-Token",
        "X-Admin-Key",
        "X-Request-ID",
    ],
)


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry the raw ValueError from a validator
    return [{k: v for k, v in err.items() if k != 'ctx'} for err in exc.errors()]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", extra={"method": request.method, "url": str(request.url), "errors": exc.errors()})
    return JSONResponse(
        status_code=422,
        content={
            "detail": jsonable_errors(exc),
            "message": "Input validation failed"
        }
    )


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


@app.exception_handler(DBAPIError)
async def storage_error_handler(request: Request, exc: DBAPIError):
    logger.error("storage_error", extra={"path": request.url.path, "error": str(exc.orig or exc)})
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage unavailable, please retry", "code": "storage_unavailable"},
        headers={"Retry-After": "1"},
    )


@app.on_event("startup")
def on_startup():
    from .init_db import init_db
    from .migrations import run_migrations

    if crud.engine is None:
        crud.engine = init_db()
    try:
        run_migrations(crud.engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get(f"{API}/cache/stats", include_in_schema=False, dependencies=[Depends(require_admin)])
def cache_stats():
    return {"cache_stats": cache.get_cache().get_stats(), "status": "ok"}


# ---- Request bodies ----

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    region: str = Field(..., min_length=1, max_length=50)
    handle: str = Field(..., min_length=1, max_length=50, pattern=r'^\s*@?[A-Za-z0-9_.]+\s*$')

    @field_validator('name', 'region')
    @classmethod
    def not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('must not be blank')
        return v


class StartPuzzleRequest(BaseModel):
    puzzle_type: PuzzleKind


class GuessRequest(BaseModel):
    words: List[str] = Field(..., min_length=game.CONNECTIONS_GROUP_SIZE, max_length=game.CONNECTIONS_GROUP_SIZE)


class ReorderRequest(BaseModel):
    words: List[str] = Field(..., max_length=game.CONNECTIONS_GROUP_SIZE * game.CONNECTIONS_NUM_GROUPS)


class CrosswordSubmitRequest(BaseModel):
    grid: List[List[Optional[str]]]

    @field_validator('grid')
    @classmethod
    def check_shape(cls, v):
        size = game.CROSSWORD_SIZE
        if len(v) != size or any(len(row) != size for row in v):
            raise ValueError(f'grid must be {size}x{size}')
        return v


class AdminLoginRequest(BaseModel):
    password: str


class LockRequest(BaseModel):
    locked: bool


def _server_time() -> str:
    return clock.now().isoformat()


# ---- Player routes ----

@app.post(f"{API}/game/register", dependencies=[Depends(register_limit)])
def register(body: RegisterRequest, session: Session = Depends(get_session)):
    if crud.get_game_locked(session):
        raise HTTPException(status_code=403, detail="Registration is closed right now")
    player = crud.register_player(session, body.name, body.region, body.handle)
    if player is None:
        raise HTTPException(status_code=409, detail="This handle is already registered")
    session_engine.start_session(session, player.id)
    provider = puzzles.CurrentPuzzleProvider(session)
    return {
        "session_token": crud.sign_player_token(session, player.id),
        "player": {"id": player.id, "name": player.name, "region": player.region, "handle": player.handle},
        "game_available": provider.connections() is not None and provider.crossword() is not None,
    }


@app.get(f"{API}/game/state")
def game_state(player_id: int = Depends(current_player_id), session: Session = Depends(get_session)):
    gs = session_engine.get_session(session, player_id)
    return {"session": session_engine.session_view(gs), "server_time": _server_time()}


@app.post(f"{API}/game/start-puzzle", dependencies=[Depends(game_open)])
def start_puzzle(body: StartPuzzleRequest, player_id: int = Depends(current_player_id),
                 session: Session = Depends(get_session)):
    gs = session_engine.start_puzzle(session, player_id, body.puzzle_type)
    key = puzzles.require_key(puzzles.CurrentPuzzleProvider(session), body.puzzle_type)
    return {
        "puzzle_type": body.puzzle_type.value,
        "started_at": clock.as_utc(gs.started_at).isoformat() if gs.started_at else None,
        "server_time": _server_time(),
        body.puzzle_type.value: session_engine.puzzle_view(gs, body.puzzle_type, key),
    }


@app.post(f"{API}/game/connections/guess", dependencies=[Depends(game_open), Depends(guess_limit)])
def connections_guess(body: GuessRequest, player_id: int = Depends(current_player_id),
                      session: Session = Depends(get_session)):
    return session_engine.submit_grouping_guess(session, player_id, body.words).model_dump()


@app.post(f"{API}/game/connections/reorder", dependencies=[Depends(game_open)])
def connections_reorder(body: ReorderRequest, player_id: int = Depends(current_player_id),
                        session: Session = Depends(get_session)):
    return {"success": True, "words": session_engine.reorder_words(session, player_id, body.words)}


@app.post(f"{API}/game/crossword/submit", dependencies=[Depends(game_open), Depends(guess_limit)])
def crossword_submit(body: CrosswordSubmitRequest, player_id: int = Depends(current_player_id),
                     session: Session = Depends(get_session)):
    return session_engine.submit_crossword_grid(session, player_id, body.grid).model_dump()


@app.post(f"{API}/game/crossword/give-up", dependencies=[Depends(game_open)])
def crossword_give_up(player_id: int = Depends(current_player_id), session: Session = Depends(get_session)):
    return session_engine.give_up_crossword(session, player_id).model_dump()


@app.post(f"{API}/game/rotate-token")
def rotate_token(player_id: int = Depends(current_player_id), session: Session = Depends(get_session)):
    """Invalidate the caller's current credential and issue a new one."""
    crud.rotate_player_secret(session, player_id)
    return {"session_token": crud.sign_player_token(session, player_id)}


@app.post(f"{API}/game/dev-complete")
def dev_complete(body: StartPuzzleRequest, player_id: int = Depends(current_player_id),
                 session: Session = Depends(get_session)):
    if not Config.DEV_MODE:
        raise HTTPException(status_code=404, detail="Not found")
    result = session_engine.autocomplete_puzzle(session, player_id, body.puzzle_type)
    gs = session_engine.get_session(session, player_id)
    return {"result": result, "session": session_engine.session_view(gs)}


@app.get(f"{API}/leaderboard", dependencies=[Depends(rate_limit_dependency(max_requests=60, window_seconds=60, bucket="leaderboard"))])
def leaderboard(session: Session = Depends(get_session)):
    rows = cache.get_cached_leaderboard()
    if rows is None:
        cache.cleanup_cache()
        rows = [e.model_dump() for e in crud.get_leaderboard(session)]
        cache.cache_leaderboard(rows)
    return {"leaderboard": rows}


# ---- Admin routes ----

@app.post(f"{API}/admin/login", dependencies=[Depends(admin_login_limit)])
def admin_login(body: AdminLoginRequest):
    if not crud.check_admin_password(body.password):
        raise HTTPException(status_code=401, detail="Invalid password")
    logger.info("admin_login")
    return {
        "success": True,
        "admin_token": crud.make_admin_token(),
        "expires_in": Config.ADMIN_TOKEN_TTL_SECONDS,
    }


@app.get(f"{API}/admin/lock", dependencies=[Depends(require_admin)])
def admin_get_lock(session: Session = Depends(get_session)):
    return {"locked": crud.get_game_locked(session)}


@app.post(f"{API}/admin/lock", dependencies=[Depends(require_admin)])
def admin_set_lock(body: LockRequest, session: Session = Depends(get_session)):
    return {"locked": crud.set_game_locked(session, body.locked)}


@app.get(f"{API}/admin/current-puzzle", dependencies=[Depends(require_admin)])
def admin_current_puzzle(session: Session = Depends(get_session)):
    return puzzles.get_current_puzzle(session)


@app.post(f"{API}/admin/current-puzzle/connections", dependencies=[Depends(require_admin)])
def admin_set_connections(body: models.ConnectionsKey, session: Session = Depends(get_session)):
    puzzles.set_current_connections(session, body)
    logger.info("current_puzzle_updated", extra={"puzzle_kind": PuzzleKind.CONNECTIONS.value})
    return {"success": True}


@app.post(f"{API}/admin/current-puzzle/crossword", dependencies=[Depends(require_admin)])
def admin_set_crossword(body: models.CrosswordKey, session: Session = Depends(get_session)):
    puzzles.set_current_crossword(session, body)
    logger.info("current_puzzle_updated", extra={"puzzle_kind": PuzzleKind.CROSSWORD.value})
    return {"success": True}


@app.get(f"{API}/admin/players", dependencies=[Depends(require_admin)])
def admin_players(session: Session = Depends(get_session)):
    return {"players": crud.get_current_players(session)}


@app.post(f"{API}/admin/archive", dependencies=[Depends(require_admin)])
def admin_archive(session: Session = Depends(get_session)):
    a = archive.run_archive_and_reset(session)
    return {"success": True, "archive": a.to_dict()}


@app.get(f"{API}/admin/archives", dependencies=[Depends(require_admin)])
def admin_archives(session: Session = Depends(get_session)):
    return {"archives": archive.list_archives(session)}


@app.get(f"{API}/admin/archives/{{archive_id}}", dependencies=[Depends(require_admin)])
def admin_archive_detail(archive_id: int, session: Session = Depends(get_session)):
    a = archive.get_archive(session, archive_id)
    if a is None:
        raise HTTPException(status_code=404, detail="Archive not found")
    return {"archive": a}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
