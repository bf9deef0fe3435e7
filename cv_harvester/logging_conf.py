"""Structured logging for the harvester.

Components log through structlog into the stdlib ``cv_harvester`` logger
tree; every handler renders JSON lines. Files below the log directory:

    harvester.log       INFO and above from every component
    error.log           ERROR and above
    audit.log           admin mutations forwarded by ``LoggingAuditSink``
    sources/<id>.log    fetch activity of a single source
"""

from __future__ import annotations

import json
import logging
import logging.config
import os
from collections import deque
from pathlib import Path
from threading import Lock
from typing import Any, Iterable

import structlog

ROOT_LOGGER = "cv_harvester"
AUDIT_LOGGER = f"{ROOT_LOGGER}.audit"
SOURCE_LOGGER_PREFIX = f"{ROOT_LOGGER}.source"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_LOGGING_INITIALISED = False
_source_handlers: dict[str, logging.FileHandler] = {}
_source_lock = Lock()


def _default_log_dir() -> Path:
    env_root = os.environ.get("CV_HARVESTER_HOME")
    if env_root:
        return Path(env_root).expanduser().resolve() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def log_dir() -> Path:
    return _default_log_dir()


def _file_handler(path: Path, level: str) -> dict[str, Any]:
    return {
        "class": "logging.FileHandler",
        "level": level,
        "filename": str(path),
        "encoding": "utf-8",
        "formatter": "json",
    }


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Install handlers and the structlog pipeline once; return the root logger.

    The console only shows warnings unless ``verbose`` is set, so CLI output
    stays readable while the files keep the full INFO stream.
    """

    global _LOGGING_INITIALISED
    if not _LOGGING_INITIALISED:
        directory = log_dir()
        (directory / "sources").mkdir(parents=True, exist_ok=True)
        level = "DEBUG" if verbose else "INFO"
        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "json": {
                        "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                        "fmt": JSON_FORMAT,
                    }
                },
                "handlers": {
                    "console": {
                        "class": "logging.StreamHandler",
                        "level": "DEBUG" if verbose else "WARNING",
                        "formatter": "json",
                    },
                    "harvester_file": _file_handler(directory / "harvester.log", "INFO"),
                    "error_file": _file_handler(directory / "error.log", "ERROR"),
                    "audit_file": _file_handler(directory / "audit.log", "INFO"),
                },
                "loggers": {
                    ROOT_LOGGER: {
                        "handlers": ["console", "harvester_file", "error_file"],
                        "level": level,
                        "propagate": False,
                    },
                    AUDIT_LOGGER: {
                        "handlers": ["audit_file"],
                        "level": "INFO",
                        "propagate": True,
                    },
                },
            }
        )

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.stdlib.filter_by_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True
    return structlog.get_logger(ROOT_LOGGER)


def component_logger(component: str, **context: Any) -> structlog.BoundLogger:
    """Root logger bound to ``component=<name>`` plus any extra context."""

    return configure_logging().bind(component=component, **context)


def audit_logger() -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(AUDIT_LOGGER).bind(component="audit")


def source_logger(source_id: str) -> structlog.BoundLogger:
    """Logger bound to ``source=<id>`` that also writes ``sources/<id>.log``.

    Worker threads call this concurrently; the handler is attached once per
    source and swapped when the log directory moves.
    """

    configure_logging()
    path = log_dir() / "sources" / f"{source_id}.log"
    name = f"{SOURCE_LOGGER_PREFIX}.{source_id}"
    with _source_lock:
        handler = _source_handlers.get(source_id)
        if handler is None or handler.baseFilename != str(path):
            py_logger = logging.getLogger(name)
            if handler is not None:
                py_logger.removeHandler(handler)
                handler.close()
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(path, encoding="utf-8")
            root_handlers = logging.getLogger(ROOT_LOGGER).handlers
            if root_handlers:
                handler.setFormatter(root_handlers[0].formatter)
            handler.setLevel(logging.INFO)
            py_logger.addHandler(handler)
            _source_handlers[source_id] = handler
    return structlog.get_logger(name).bind(source=source_id)


def tail_log(path: Path, line_count: int = 100, level: str | None = None) -> list[str]:
    """Return the last ``line_count`` lines, optionally only one log level.

    Lines that are not JSON never match a level filter.
    """

    if not path.exists():
        return []
    wanted = level.upper() if level else None
    lines: deque[str] = deque(maxlen=max(line_count, 0))
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        for line in stream:
            if wanted is not None and _line_level(line) != wanted:
                continue
            lines.append(line)
    return list(lines)


def _line_level(line: str) -> str | None:
    try:
        payload = json.loads(line)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    value = payload.get("levelname") or payload.get("level")
    return str(value).upper() if value else None


def available_source_logs() -> Iterable[Path]:
    sources_dir = log_dir() / "sources"
    if not sources_dir.exists():
        return []
    return sorted(sources_dir.glob("*.log"))


__all__ = [
    "AUDIT_LOGGER",
    "ROOT_LOGGER",
    "audit_logger",
    "available_source_logs",
    "component_logger",
    "configure_logging",
    "log_dir",
    "source_logger",
    "tail_log",
]
