import os
import logging
import logging.config
from pathlib import Path
from typing import Dict, Any


_configured = False  # idempotency guard

# Third-party loggers that follow the root level (SQL echo stays quieter)
_ALIGNED = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "httpx")


def _build_dict_config(
    log_file: str | None, level: str, cache_level: str | None = None
) -> Dict[str, Any]:
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "std",
        }
    }
    root_handlers = ["console"]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.WatchedFileHandler",
            "filename": log_file,
            "formatter": "std",
        }
        root_handlers.append("file")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "std": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"}
        },
        "handlers": handlers,
        # package logger propagates to root; it only gets its own threshold
        "loggers": {"itemcache": {"level": cache_level or level}},
        "root": {"level": level, "handlers": root_handlers},
    }


def configure_logging() -> None:
    """Configure logging to stdout and (optionally) to LOG_FILE_PATH.

    Env:
        LOG_LEVEL            root level (default INFO)
        ITEMCACHE_LOG_LEVEL  level for the itemcache.* loggers (default LOG_LEVEL)
        LOG_FILE_PATH        optional file sink (WatchedFileHandler)

    Idempotent: safe to call from the service entrypoint and from embedding
    applications alike.
    """
    global _configured
    if _configured:
        return

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    cache_level = (os.getenv("ITEMCACHE_LOG_LEVEL") or "").upper() or None
    log_file = os.getenv("LOG_FILE_PATH") or None

    logging.config.dictConfig(_build_dict_config(log_file, level, cache_level))

    for name in _ALIGNED:
        logging.getLogger(name).setLevel(level)
    # SQLAlchemy logs every statement at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(
        level if level == "DEBUG" else "WARNING"
    )

    _configured = True
