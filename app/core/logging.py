# app/core/logging.py
from __future__ import annotations

import hashlib
import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

# ---- Request-ID context ------------------------------------------------------
_request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

def set_request_id(value: str) -> None:
    _request_id_ctx.set(value)

def get_request_id() -> str:
    return _request_id_ctx.get()

def key_fingerprint(secret: str) -> str:
    """Short, non-reversible marker for a credential so logs never carry the raw value."""
    digest = hashlib.sha256(secret.encode("utf-8")).hexdigest()
    return f"{digest[:6]}…{digest[-6:]}"

class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True

# ---- JSON formatter ----------------------------------------------------------
_RESERVED = ("args", "msg", "exc_info", "exc_text", "stack_info", "pathname",
             "lineno", "levelname", "name", "created")

class JsonFormatter(logging.Formatter):
    def _ts(self, record: logging.LogRecord) -> str:
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="seconds")

    def format(self, record: logging.LogRecord) -> str:
        try:
            base = {
                "ts": self._ts(record),
                "lvl": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "request_id": getattr(record, "request_id", "-"),
                "file": record.pathname,
                "line": record.lineno,
            }
            # serializable extras only
            for k, v in list(record.__dict__.items()):
                if k in _RESERVED or k in base:
                    continue
                try:
                    json.dumps({k: v})
                except (TypeError, ValueError):
                    continue
                base[k] = v
            if record.exc_info:
                base["exc"] = self.formatException(record.exc_info)
            return json.dumps(base, ensure_ascii=False)
        except Exception as e:  # logging must never raise
            return json.dumps({"ts": self._ts(record), "lvl": "ERROR", "logger": "logging",
                               "msg": f"formatting-error: {e!r}"}, ensure_ascii=False)

# ---- Setup -------------------------------------------------------------------
def setup_logging(log_dir: str = "logs", level: str = "INFO",
                  max_bytes: int = 1048576, backups: int = 7) -> None:
    level = level.upper()
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(path / "app.log",
                                       maxBytes=max_bytes, backupCount=backups,
                                       encoding="utf-8")
    console_handler = logging.StreamHandler()

    jf = JsonFormatter()
    file_handler.setFormatter(jf)
    console_handler.setFormatter(jf)

    rid_filter = RequestIdFilter()
    file_handler.addFilter(rid_filter)
    console_handler.addFilter(rid_filter)

    root = logging.getLogger()
    root.setLevel(level)

    # Reset handlers to avoid double-logging
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logging.getLogger(name).setLevel(level)
    # httpx logs every outbound request line at INFO
    logging.getLogger("httpx").setLevel("WARNING")
