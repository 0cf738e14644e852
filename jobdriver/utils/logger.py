# jobdriver/utils/logger.py
"""
jobdriver logging utilities
---------------------------
Process-level logging setup for the driver and its forked children.

Features:
 - JSONFormatter (one JSON object per line) and a human-friendly formatter
 - Console + rotating file handlers
 - Component-scoped adapter that tags records with `component`
 - Every record carries the emitting pid, so interleaved parent/child output
   stays attributable after fork

Usage:
    from jobdriver.utils.logger import configure_logging
    configure_logging(level="INFO", logfile="/var/log/jobdriver.log")
    log = logging.getLogger("jobdriver.driver")
    log.info("hello", extra={"job": "resize"})
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
from typing import Any, Dict, Optional

from jobdriver.utils.time_utils import iso_now

# -------------------------
# Constants & Env defaults
# -------------------------
DEFAULT_LOG_LEVEL = os.getenv("JOBDRIVER_LOGLEVEL", "INFO").upper()
DEFAULT_MAX_BYTES = int(os.getenv("JOBDRIVER_LOG_MAX_BYTES", str(50 * 1024 * 1024)))  # 50MB
DEFAULT_BACKUP_COUNT = int(os.getenv("JOBDRIVER_LOG_BACKUPS", "7"))

# attributes every LogRecord has; anything else came in through `extra`
_RESERVED = frozenset(
    (
        "args", "msg", "levelname", "levelno", "name", "pathname", "filename", "module", "lineno",
        "funcName", "exc_info", "exc_text", "stack_info", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message", "asctime", "taskName",
    )
)

def _get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown-host"

# -------------------------
# Formatters
# -------------------------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter that attaches standard fields:
      - ts, level, logger, message, pid, hostname, service
      - any `extra` passed to the log call
      - exc_info when present
    """
    def __init__(self, service_name: str = "jobdriver", extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.service = service_name
        self.extra_fields = extra_fields or {}
        self.hostname = _get_hostname()

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": iso_now(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
            "hostname": self.hostname,
            # read per record: forked children inherit the formatter
            "pid": record.process,
        }
        extra = {k: v for k, v in record.__dict__.items() if k not in _RESERVED and not k.startswith("_")}
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(self.extra_fields)
        return json.dumps(payload, default=str)

class HumanFormatter(logging.Formatter):
    """Human-friendly formatter; appends the job name when present."""
    def __init__(self):
        super().__init__(fmt="%(asctime)s [%(levelname)s] %(process)d %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        job = getattr(record, "job", None)
        if job:
            base = f"{base} | job={job}"
        return base

# -------------------------
# Configure logging
# -------------------------
_DEFAULT_CONFIGURED = False
_LOCK = threading.Lock()

def configure_logging(
    level: Optional[str] = None,
    logfile: Optional[str] = None,
    json_format: bool = False,
    console: bool = True,
    service_name: str = "jobdriver",
    force: bool = False,
):
    """
    Configure root logging for the driver process.

    Parameters:
      - level: logging level name (e.g. "INFO")
      - logfile: optional path; enables a rotating file handler (always JSON)
      - json_format: use JSONFormatter for the console handler
      - console: enable stdout handler
      - force: reconfigure even if configure_logging already ran
    """
    global _DEFAULT_CONFIGURED
    with _LOCK:
        if _DEFAULT_CONFIGURED and not force:
            return
        level_name = (level or DEFAULT_LOG_LEVEL).upper()
        numeric = getattr(logging, level_name, None)
        if not isinstance(numeric, int):
            raise ValueError(f"unknown log level: {level}")

        root = logging.getLogger()
        for h in list(root.handlers):
            root.removeHandler(h)
        root.setLevel(numeric)

        if console:
            ch = logging.StreamHandler(stream=sys.stdout)
            ch.setFormatter(JSONFormatter(service_name=service_name) if json_format else HumanFormatter())
            root.addHandler(ch)

        if logfile:
            pathlib.Path(logfile).parent.mkdir(parents=True, exist_ok=True)
            fh = logging.handlers.RotatingFileHandler(logfile, maxBytes=DEFAULT_MAX_BYTES, backupCount=DEFAULT_BACKUP_COUNT, encoding="utf-8")
            fh.setFormatter(JSONFormatter(service_name=service_name))
            root.addHandler(fh)

        _DEFAULT_CONFIGURED = True

# -------------------------
# Structured Logger Adapter
# -------------------------
class StructuredLoggerAdapter(logging.LoggerAdapter):
    """
    Attach structured context to logs conveniently. Works well with JSONFormatter.
    Usage:
        log = StructuredLoggerAdapter(logging.getLogger("jobdriver.driver"), {"component": "driver"})
        log.info("forked", extra={"job": "resize"})
    """
    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        if isinstance(self.extra, dict):
            for k, v in self.extra.items():
                extra.setdefault(k, v)
        return msg, kwargs

__all__ = [
    "configure_logging",
    "JSONFormatter",
    "HumanFormatter",
    "StructuredLoggerAdapter",
]
