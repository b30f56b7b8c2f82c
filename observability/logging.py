from __future__ import annotations
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'exc_info', 'exc_text',
    'stack_info', 'taskName', 'message', 'asctime',
})

# Chatty third-party loggers
_QUIET_LOGGERS = ("aiohttp.access", "sqlalchemy.engine", "urllib3")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with any ``extra`` fields (e.g. ``job_id``) included."""

    def __init__(self, service_name: str = "docharvest"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                entry[key] = value
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter: ``time | LEVEL | logger | message``."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        job_id = getattr(record, "job_id", None)
        prefix = f"[{job_id}] " if job_id else ""
        message = f"{timestamp} | {record.levelname:8} | {record.name} | {prefix}{record.getMessage()}"

        if self.use_colors and record.levelname in self.COLORS:
            message = f"{self.COLORS[record.levelname]}{message}{self.RESET}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(
    level: str = "INFO",
    service_name: str = "docharvest",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Configure the root logger.

    Args:
        level: Log level name
        service_name: Service name stamped on JSON records
        log_file: Optional file that receives JSON records
        use_json: JSON instead of the colored console format
        use_colors: ANSI colors for the console format
    """
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(JSONFormatter(service_name) if use_json else ColoredFormatter(use_colors))
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(JSONFormatter(service_name))
        root_logger.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_settings(settings, service_name: str = "docharvest") -> None:
    """Apply the ``logging`` section of the settings file."""
    setup_logging(
        level=settings.get("logging.level", "INFO"),
        service_name=service_name,
        log_file=settings.get("logging.log_file"),
        use_json=bool(settings.get("logging.use_json", False)),
        use_colors=bool(settings.get("logging.use_colors", True)),
    )


def get_logger(name: str, job_id: Optional[str] = None) -> logging.Logger | logging.LoggerAdapter:
    """Logger for ``name``; with ``job_id`` every record carries that job id."""
    logger = logging.getLogger(name)
    if job_id is None:
        return logger
    return logging.LoggerAdapter(logger, {"job_id": job_id})
