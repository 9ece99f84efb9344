# src/feedsentry/logging_utils.py
import json
import logging
import logging.handlers
import sys
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import Settings, get_settings

# Attributes every LogRecord carries; anything else was passed via ``extra=``.
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}

MAX_LOG_BYTES = 10 * 1024 * 1024
MAIN_LOG = "feedsentry.jsonl"
ERROR_LOG = "errors.log"
EMERGENCY_LOG = "emergencies.jsonl"
# Loggers whose records also land in the emergency log
EMERGENCY_LOGGERS = ("emergency", "detector")


def _jsonify(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


def _extras(record: logging.LogRecord) -> List[Tuple[str, Any]]:
    return [
        (k, _jsonify(v))
        for k, v in record.__dict__.items()
        if k not in _RECORD_ATTRS and not k.startswith("_")
    ]


def _timestamp(record: logging.LogRecord) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created))


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, name, msg plus any extras."""

    def format(self, record: logging.LogRecord) -> str:
        out: Dict[str, Any] = {
            "ts": _timestamp(record),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        for k, v in _extras(record):
            out.setdefault(k, v)
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        return json.dumps(out, ensure_ascii=False)


class PlainFormatter(logging.Formatter):
    """Single-line console format with colourised levels."""

    LEVEL_COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        colour = self.LEVEL_COLOURS.get(level, "")
        reset = self.RESET if colour else ""
        line = f"{_timestamp(record)} {colour}{level:<8}{reset} {record.name}: {record.getMessage()}"
        extras = " ".join(f"{k}={v}" for k, v in _extras(record))
        return f"{line} {extras}" if extras else line


class _NameFilter(logging.Filter):
    def __init__(self, names: Iterable[str]) -> None:
        super().__init__()
        self.names = tuple(names)

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name.startswith(self.names)


def _rotating(path: Path, backups: int, level: int = logging.NOTSET) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=MAX_LOG_BYTES, backupCount=backups, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter())
    return handler


def _file_handlers(log_dir: Path, backups: int) -> List[logging.Handler]:
    log_dir.mkdir(parents=True, exist_ok=True)
    emergencies = _rotating(log_dir / EMERGENCY_LOG, backups)
    emergencies.addFilter(_NameFilter(EMERGENCY_LOGGERS))
    return [
        _rotating(log_dir / MAIN_LOG, backups),
        _rotating(log_dir / ERROR_LOG, backups, logging.WARNING),
        emergencies,
    ]


def setup_logging(level: Optional[str] = None, settings: Optional[Settings] = None) -> None:
    """Configure root logging for feedsentry.

    Console output is JSON lines unless ``LOG_PLAIN=1``, in which case a
    colourised single-line format is used.  When ``LOG_DIR`` is set three
    rotating files are written there:

    - ``feedsentry.jsonl``: everything
    - ``errors.log``: WARNING and above
    - ``emergencies.jsonl``: detector and emergency handler records only

    ``level`` overrides ``LOG_LEVEL``.
    """
    settings = settings or get_settings()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel((level or settings.log_level or "INFO").upper())

    if settings.log_dir is not None:
        try:
            for handler in _file_handlers(
                settings.log_dir, max(settings.log_rotation_days, 1)
            ):
                root.addHandler(handler)
        except OSError as e:
            # unwritable log dir: console only
            sys.stderr.write(f"log_dir_unavailable path={settings.log_dir} err={e}\n")

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(PlainFormatter() if settings.log_plain else JsonFormatter())
    root.addHandler(console)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
