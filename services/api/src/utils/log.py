"""
Environment-aware logging for the API service.

Development gets coloured, human-readable lines; staging and production get
one JSON object per line for log aggregation. ``init`` configures the root
logger so the models package (plain ``logging.getLogger``) is formatted the
same way.
"""

import json
import logging
import os
import sys
from datetime import datetime

COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
    "ENDC": "\033[0m",
}


class ColoredFormatter(logging.Formatter):

    def format(self, record):
        level_color = COLORS.get(record.levelname, "")
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        colored_level = f"{level_color}{record.levelname:8s}{COLORS['ENDC']}"
        module_name = record.name if record.name != "__main__" else "main"
        line = f"[{timestamp}] {colored_level} [{module_name}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
            "environment": get_environment(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def get_environment() -> str:
    return os.getenv("ENVIRONMENT", "development").lower()


def init(level: str = "INFO") -> None:
    resolved = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(resolved)
    if get_environment() in ("production", "prod", "staging"):
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ColoredFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(resolved)

    # uvicorn installs its own handlers unless log_config=None
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "apscheduler"):
        logging.getLogger(name).handlers.clear()
        logging.getLogger(name).propagate = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
