from datetime import datetime
import os
import re
import sys
import json
import logging
import traceback

from tenantdb.core.logging_context import ContextFilter


SUCCESS_LEVEL = 25
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")

# Attributes every LogRecord carries; anything else is an "extra" field
_RECORD_ATTRS = {
    "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "process", "processName", "scope", "name", "taskName",
}

_managed_loggers = set()


class CustomLogger(logging.Logger):
    def success(self, message, *args, **kwargs):
        if self.isEnabledFor(SUCCESS_LEVEL):
            self.log(SUCCESS_LEVEL, message, *args, **kwargs, stacklevel=2)


def stringify_extra(value):
    if isinstance(value, (list, dict, set, tuple)):
        return str(value)
    return value


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_level(default: str = "INFO") -> int:
    raw = (os.getenv("TENANTDB_LOG_LEVEL") or default).strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


class CustomFormatter(logging.Formatter):

    def __init__(self, fmt="%(message)s", include_location=False):
        super().__init__(fmt)
        self.include_location = include_location

    def format(self, record):
        scope = getattr(record, "scope", "")
        location = ""
        if self.include_location:
            location = f"({record.module}:{record.funcName}:{record.lineno})"
        metadata_line = f"{datetime.now().isoformat()} [{record.levelname}] {scope} {location}".strip()

        message_split = record.getMessage().splitlines() or [""]
        message_line = f"     Message: {message_split[0]}"
        for line in message_split[1:]:
            message_line += f"\n             {line}"

        extra_items = [
            f"{key}: {stringify_extra(value)}"
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        ]
        extra_info = f"\n     {' '.join(extra_items)}" if extra_items else ""
        formatted_log = f"{metadata_line}\n{message_line}{extra_info}"

        if record.exc_info:
            # clickable "file:line" locations in terminals and editors
            lines = traceback.format_exception(*record.exc_info)
            lines = [re.sub(r'File "([^"]+)", line (\d+),', r'File "\1:\2"', line) for line in lines]
            formatted_log += "\n" + "".join(lines)
        return formatted_log


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_dict = {
            "level": record.levelname,
            "message": record.getMessage(),
            "time": self.formatTime(record, self.datefmt),
            "logger": record.name,
        }
        if hasattr(record, "scope"):
            log_dict["scope"] = record.scope
        log_dict["location"] = {
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and key not in log_dict:
                log_dict[key] = stringify_extra(value)
        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_dict, ensure_ascii=False, default=str)


def setup_logger(name: str, include_location=False, use_json=None):
    logging.setLoggerClass(CustomLogger)
    logger = logging.getLogger(name)
    if not any(isinstance(f, ContextFilter) for f in logger.filters):
        logger.addFilter(ContextFilter())

    if use_json is None:
        use_json = _env_flag("TENANTDB_LOG_JSON")

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(logging.DEBUG)
        if use_json:
            stream_handler.setFormatter(JSONFormatter())
        else:
            stream_handler.setFormatter(CustomFormatter(include_location=include_location))
        logger.addHandler(stream_handler)
    logger.setLevel(_env_level())
    logger.propagate = False
    _managed_loggers.add(name)
    return logger


def configure_logging(level: str = "INFO", use_json: bool = False) -> None:
    """Re-apply level and formatter to every logger created through setup_logger."""
    numeric = logging.getLevelName(level.strip().upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    for name in _managed_loggers:
        logger = logging.getLogger(name)
        logger.setLevel(numeric)
        for handler in logger.handlers:
            if not isinstance(handler, logging.StreamHandler):
                continue
            if use_json and not isinstance(handler.formatter, JSONFormatter):
                handler.setFormatter(JSONFormatter())
            elif not use_json and isinstance(handler.formatter, JSONFormatter):
                handler.setFormatter(CustomFormatter(include_location=True))
