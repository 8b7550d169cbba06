import json
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

# Request id for the request being served, set by the request logging middleware
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "client", "user_agent")

# Structured `extra` keys the game modules log with
EVENT_FIELDS = (
    "player_id",
    "puzzle_kind",
    "verdict",
    "mistakes",
    "attempts",
    "total_time_ms",
    "archive_id",
    "player_count",
    "locked",
    "migration",
    "applied",
    "evicted",
    "url",
    "errors",
    "error",
)

_ANSI = {
    "reset": "\033[0m",
    "bold": "\033[1m",
    "grey": "\033[90m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "magenta": "\033[35m",
    "cyan": "\033[36m",
}

_LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "magenta",
}


def record_fields(record: logging.LogRecord, names) -> Dict[str, Any]:
    """The subset of ``names`` present (and not None) on a log record."""
    out = {}
    for name in names:
        val = getattr(record, name, None)
        if val is not None:
            out[name] = val
    return out


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        payload.update(record_fields(record, REQUEST_FIELDS + EVENT_FIELDS))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Single-line human format for a terminal.

    ``INFO 12:00:01 rid=... puzzlerace POST /api/v1/game/register 200 4ms - request``
    """

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def paint(self, text: str, color: str) -> str:
        if not self.use_color or not color:
            return text
        return f"{_ANSI[color]}{text}{_ANSI['reset']}"

    def _status_color(self, status: int) -> str:
        if status < 300:
            return "green"
        return "yellow" if status < 500 else "red"

    def _request_parts(self, record: logging.LogRecord) -> List[str]:
        req = record_fields(record, REQUEST_FIELDS)
        parts = []
        if "method" in req:
            parts.append(self.paint(req["method"], "bold"))
        if "path" in req:
            parts.append(self.paint(req["path"], "cyan"))
        if isinstance(req.get("status"), int):
            parts.append(self.paint(str(req["status"]), self._status_color(req["status"])))
        if "duration_ms" in req:
            parts.append(self.paint(f"{req['duration_ms']}ms", "grey"))
        return parts

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            self.paint(record.levelname, _LEVEL_COLORS.get(record.levelname, "")),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        rid = request_id_ctx.get()
        if rid:
            parts.append(self.paint(f"rid={rid}", "magenta"))
        parts.append(self.paint(record.name, "blue"))
        parts.extend(self._request_parts(record))

        msg = record.getMessage()
        if msg:
            parts.extend(["-", msg])

        events = record_fields(record, EVENT_FIELDS)
        if events:
            parts.append(self.paint(" ".join(f"{k}={v}" for k, v in events.items()), "grey"))

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _wants_pretty(stream) -> bool:
    fmt = os.getenv("LOG_FORMAT", "").lower()
    if fmt in ("pretty", "json"):
        return fmt == "pretty"
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Install one stdout handler on the root and uvicorn loggers.

    LOG_FORMAT=pretty|json picks the formatter; unset means pretty on a TTY
    and JSON otherwise. LOG_COLOR=0 turns colours off in pretty mode.
    """
    handler = logging.StreamHandler(sys.stdout)
    if _wants_pretty(sys.stdout):
        use_color = os.getenv("LOG_COLOR", "1").lower() not in ("0", "false", "no")
        handler.setFormatter(ColorFormatter(use_color=use_color))
    else:
        handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False
    return root


def get_logger(name: str = "puzzlerace") -> logging.Logger:
    return logging.getLogger(name)
