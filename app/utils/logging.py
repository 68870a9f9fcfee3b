import json
import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict

from loguru import logger

from app.utils.context import get_request_id

DEFAULT_CORRELATION_ID = "app"
CONFIG_PATH = Path(__file__).resolve().parents[2] / "logging_config.json"

# Stdlib loggers whose records are rerouted into loguru
FOREIGN_LOGGERS = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "celery",
    "httpx",
    "sqlalchemy.engine",
)


class InterceptHandler(logging.Handler):
    """Forward stdlib ``logging`` records to loguru, keeping the caller frame."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _attach_correlation_id(record: Dict[str, Any]) -> None:
    # A value bound explicitly (e.g. a tick id) wins over the context variable
    record["extra"].setdefault(
        "request_id", get_request_id() or DEFAULT_CORRELATION_ID
    )


def load_profile(config_path: Path, profile: str) -> Dict[str, Any]:
    with open(config_path) as config_file:
        profiles = json.load(config_file)
    return profiles.get(profile, profiles["logger"])


def configure_logging(profile_config: Dict[str, Any]):
    """Replace loguru's default sink with a console sink and a rotating file sink."""
    level = (os.getenv("LOG_LEVEL") or profile_config.get("level", "info")).upper()
    log_file = (
        Path(profile_config.get("log_dir", "logs"))
        / f"{date.today():%Y-%m-%d}-{profile_config['filename']}"
    )

    logger.remove()
    logger.configure(patcher=_attach_correlation_id)

    logger.add(
        sys.stdout,
        enqueue=True,
        backtrace=True,
        level=level,
        format=profile_config["console_format"],
        colorize=True,
    )

    file_sink: Dict[str, Any] = {
        "rotation": profile_config.get("rotation"),
        "retention": profile_config.get("retention"),
        "enqueue": True,
        "backtrace": True,
        "level": level,
        "colorize": False,
    }
    if profile_config.get("use_json_logs") and profile_config.get("file_format") == "json":
        file_sink["serialize"] = True
    else:
        file_sink["format"] = profile_config["file_format"]
    logger.add(str(log_file), **file_sink)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in FOREIGN_LOGGERS:
        logging.getLogger(name).handlers = [InterceptHandler()]

    return logger


profile = "production" if os.getenv("ENVIRONMENT", "development") == "production" else "logger"
app_logger = configure_logging(load_profile(CONFIG_PATH, profile))


def get_logger(**bindings):
    """Return the application logger, optionally bound to extra structured fields."""
    return app_logger.bind(**bindings) if bindings else app_logger
