import logging
import os
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def log_dir() -> Path:
    """Directory for per-component log files: $DERIV_LOG_DIR, else ./logs."""
    path = Path(os.getenv("DERIV_LOG_DIR", "logs"))
    path.mkdir(parents=True, exist_ok=True)
    return path


def _level() -> int:
    name = os.getenv("DERIV_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    Named logger for one service component.

    Writes to stderr and to ``<log_dir>/<name>.log``. Handlers are attached
    once, so repeated calls for the same component share them.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(_level())
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    try:
        file_handler = logging.FileHandler(log_dir() / f"{name}.log", encoding="utf-8")
    except OSError:  # pragma: no cover
        # Unwritable log dir: stderr only.
        return logger
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return logger
