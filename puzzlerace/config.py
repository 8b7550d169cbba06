import os


def _flag(name: str, default: str = '0') -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    DATABASE_URL = os.environ.get('DATABASE_URL') or 'sqlite:///./puzzlerace.db'
    # secret for signing player tokens; override with SESSION_SECRET in production
    SESSION_SECRET = os.environ.get('SESSION_SECRET') or 'dev-secret-change-me'
    ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY') or ''
    ADMIN_SESSION_SECRET = os.environ.get('ADMIN_SESSION_SECRET') or ADMIN_API_KEY or 'dev-admin-session-secret'
    ADMIN_TOKEN_TTL_SECONDS = int(os.environ.get('ADMIN_TOKEN_TTL_SECONDS', '7200'))
    # seconds a SQLite writer waits for the database lock before giving up
    SQLITE_BUSY_TIMEOUT = float(os.environ.get('SQLITE_BUSY_TIMEOUT', '30'))
    DEV_MODE = _flag('DEV_MODE')
    CORS_ORIGINS = [
        o.strip()
        for o in (os.environ.get('CORS_ORIGINS') or 'http://localhost:5173,http://127.0.0.1:5173').split(',')
        if o.strip()
    ]
    PORT = int(os.environ.get('PORT', '8000'))
