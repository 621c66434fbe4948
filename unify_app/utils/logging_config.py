# unify_app/utils/logging_config.py

"""
Application logging setup.

Handlers are attached to ``app.logger`` from the monitoring config keys
(``LOG_LEVEL``, ``LOG_FORMAT``, ``LOG_DIR``, rotation and console/file
toggles). The JSON formatter carries structured ``extra={...}`` fields so the
``unifier_*`` context logged by the pipeline survives into log aggregation.
"""

from __future__ import annotations

import json
import logging
import os
import time
from logging.handlers import RotatingFileHandler
from typing import Any

from flask import Flask

_STANDARD_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {
    "message",
    "asctime",
}
_HANDLER_MARKER = "_unify_handler"


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        self.converter = time.gmtime


class JsonFormatter(logging.Formatter):
    def __init__(self, *, app_name: str | None = None) -> None:
        super().__init__()
        self.converter = time.gmtime
        self.app_name = app_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.app_name:
            payload["app"] = self.app_name

        extras = {key: value for key, value in vars(record).items() if key not in _STANDARD_RECORD_ATTRS}
        if extras:
            payload["context"] = extras

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if level is None:
        return logging.INFO
    return logging._nameToLevel.get(str(level).upper(), logging.INFO)


def _build_formatter(app: Flask) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "text")).lower() == "json":
        return JsonFormatter(app_name=app.config.get("APP_NAME"))
    return TextFormatter()


def setup_logging(app: Flask) -> None:
    """
    Configure ``app.logger`` handlers from the Flask config.

    Safe to call repeatedly; handlers installed by a previous call are
    replaced rather than duplicated.
    """
    logger = app.logger
    level = _resolve_level(app.config.get("LOG_LEVEL", "INFO"))
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    formatter = _build_formatter(app)

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        setattr(console_handler, _HANDLER_MARKER, True)
        logger.addHandler(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "unify.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        setattr(file_handler, _HANDLER_MARKER, True)
        logger.addHandler(file_handler)

    logger.debug(
        "Logging configured",
        extra={"log_level": logging.getLevelName(level), "log_format": app.config.get("LOG_FORMAT")},
    )
