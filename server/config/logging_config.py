"""
Logging Configuration for Tablefill Server
Console and rotating file logging for the API and enrichment worker

The API and the worker run as separate processes, so each writes its own
main log file; both share errors.log.
"""

import logging
import logging.config
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from .settings import get_settings

settings = get_settings()

# Loggers owned by this codebase; everything else goes through the root logger
APP_LOGGERS = ("tablefill_server", "tablefill_worker", "enrichment")

MAX_LOG_BYTES = 10485760  # 10MB


def _rotating_handler(filename: Path, level: str, backup_count: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": "detailed",
        "filename": str(filename),
        "maxBytes": MAX_LOG_BYTES,
        "backupCount": backup_count,
        "encoding": "utf8"
    }


def setup_logging(log_file: str = "tablefill.log", level: Optional[str] = None):
    """
    Set up logging for one Tablefill process.

    Args:
        log_file: Main log file name inside `settings.log_path`
        level: Overrides `settings.log_level` for the application loggers
    """
    level = (level or settings.log_level).upper()
    log_path = Path(settings.log_path)
    log_path.mkdir(parents=True, exist_ok=True)

    app_handlers = ["console", "file", "error_file"]
    loggers: Dict[str, Dict[str, Any]] = {
        "": {"level": level, "handlers": app_handlers, "propagate": False},  # Root logger
    }
    for name in APP_LOGGERS:
        loggers[name] = {"level": level, "handlers": app_handlers, "propagate": False}

    # Third-party noise: request lines and HTTP client chatter go to file only
    loggers["uvicorn"] = {"level": "INFO", "handlers": ["console", "file"], "propagate": False}
    loggers["uvicorn.access"] = {"level": "INFO", "handlers": ["file"], "propagate": False}
    for name in ("httpx", "httpcore"):
        loggers[name] = {
            "level": "DEBUG" if settings.debug else "WARNING",
            "handlers": ["file"],
            "propagate": False
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "detailed": {
                "format": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(funcName)s() - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "standard",
                "stream": sys.stdout
            },
            "file": _rotating_handler(log_path / log_file, level, backup_count=5),
            "error_file": _rotating_handler(log_path / "errors.log", "ERROR", backup_count=10)
        },
        "loggers": loggers
    })

    logger = logging.getLogger("tablefill_server" if log_file == "tablefill.log" else "tablefill_worker")
    logger.info(f"Logging initialized: level={level}, file={log_path / log_file}")
