# podscaler/utils/logger.py
"""
podscaler Logger Utilities
--------------------------
Logging helpers shared by every podscaler component.

Features:
 - JSONFormatter for log shipping and a human-friendly formatter for terminals
 - configure_logging() driven by PODSCALER_LOG_LEVEL / PODSCALER_LOG_JSON
 - optional rotating file handler (PODSCALER_LOG_DIR)
 - StructuredLoggerAdapter that stamps component/workload context on records

Usage:
    from podscaler.utils.logger import configure_logging, get_logger, StructuredLoggerAdapter
    configure_logging()
    LOG = get_logger("podscaler.autoscaler")
    LAD = StructuredLoggerAdapter(LOG, {"component": "autoscaler", "workload": "flask-app"})
    LAD.info("desired replicas %d", 3)
"""

from __future__ import annotations

import os
import sys
import json
import socket
import logging
import logging.handlers
import pathlib
import threading
import datetime
from typing import Any, Dict, Optional

# -------------------------
# Constants & Env defaults
# -------------------------
DEFAULT_LOG_LEVEL = os.getenv("PODSCALER_LOG_LEVEL", "INFO").upper()
DEFAULT_LOG_JSON = os.getenv("PODSCALER_LOG_JSON", "false").lower() in ("1", "true", "yes")
DEFAULT_LOG_DIR = os.getenv("PODSCALER_LOG_DIR", "")
DEFAULT_LOG_FILE = os.getenv("PODSCALER_LOG_FILE", "podscaler.log")
DEFAULT_MAX_BYTES = int(os.getenv("PODSCALER_LOG_MAX_BYTES", str(20 * 1024 * 1024)))  # 20MB
DEFAULT_BACKUP_COUNT = int(os.getenv("PODSCALER_LOG_BACKUPS", "5"))

# LogRecord attributes that are not user supplied context
_RESERVED_ATTRS = frozenset((
    "args", "msg", "levelname", "levelno", "name", "pathname", "filename", "module",
    "lineno", "funcName", "exc_info", "exc_text", "stack_info", "created", "msecs",
    "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    "message", "asctime",
))


def _get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown-host"


def _record_context(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


# -------------------------
# Formatters
# -------------------------
class JSONFormatter(logging.Formatter):
    """
    One JSON object per line:
      - ts, level, logger, message, module, line
      - service, hostname, pid
      - any structured context passed via `extra=` or an adapter
    """
    def __init__(self, service_name: str = "podscaler", extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.service = service_name
        self.extra_fields = extra_fields or {}
        self.hostname = _get_hostname()
        self.pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.datetime.fromtimestamp(record.created, datetime.timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "service": self.service,
            "hostname": self.hostname,
            "pid": self.pid,
        }
        context = _record_context(record)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(self.extra_fields)
        return json.dumps(payload, default=str)


class HumanFormatter(logging.Formatter):
    """
    Terminal formatter; appends workload/component context when present.
    """
    def __init__(self):
        super().__init__(fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = _record_context(record)
        if context:
            tail = " ".join(f"{k}={v}" for k, v in sorted(context.items()))
            # exception text is already appended by the base formatter
            head, sep, rest = base.partition("\n")
            base = f"{head} | {tail}{sep}{rest}"
        return base


# -------------------------
# Configure logging
# -------------------------
_CONFIGURED = False
_LOCK = threading.Lock()


def configure_logging(
    level: Optional[str] = None,
    json_logs: Optional[bool] = None,
    log_dir: Optional[str] = None,
    service_name: str = "podscaler",
    force: bool = False,
) -> None:
    """
    Configure the `podscaler` logger hierarchy.

    Parameters:
      - level: logging level name (defaults to PODSCALER_LOG_LEVEL)
      - json_logs: JSON lines instead of human format (defaults to PODSCALER_LOG_JSON)
      - log_dir: when set, also write a rotating JSON log file there
      - force: reconfigure even if already configured (used by the CLI)
    """
    global _CONFIGURED
    with _LOCK:
        if _CONFIGURED and not force:
            return
        level = (level or DEFAULT_LOG_LEVEL).upper()
        json_logs = DEFAULT_LOG_JSON if json_logs is None else json_logs
        log_dir = log_dir if log_dir is not None else DEFAULT_LOG_DIR

        root = logging.getLogger("podscaler")
        root.setLevel(getattr(logging, level, logging.INFO))
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler(stream=sys.stdout)
        ch.setFormatter(JSONFormatter(service_name=service_name) if json_logs else HumanFormatter())
        root.addHandler(ch)

        if log_dir:
            pathlib.Path(log_dir).mkdir(parents=True, exist_ok=True)
            fh = logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, DEFAULT_LOG_FILE),
                maxBytes=DEFAULT_MAX_BYTES,
                backupCount=DEFAULT_BACKUP_COUNT,
                encoding="utf-8",
            )
            fh.setFormatter(JSONFormatter(service_name=service_name))
            root.addHandler(fh)

        # podscaler records are handled here; do not duplicate through the root logger
        root.propagate = False
        _CONFIGURED = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger in the `podscaler` hierarchy."""
    if name is None:
        name = "podscaler"
    return logging.getLogger(name)


# -------------------------
# Structured Logger Adapter
# -------------------------
class StructuredLoggerAdapter(logging.LoggerAdapter):
    """
    Attach structured context to logs. Works with both formatters.
    Usage:
        lad = StructuredLoggerAdapter(get_logger(__name__), {"component": "volumes"})
        lad.info("claim bound", extra={"claim": "data-mongodb-0"})
    """
    def process(self, msg, kwargs):
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


__all__ = ["configure_logging", "get_logger", "StructuredLoggerAdapter", "JSONFormatter", "HumanFormatter"]
