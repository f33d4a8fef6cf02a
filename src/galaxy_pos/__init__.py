"""Galaxy POS: inventory-commit engine and local workbook store for a bar till.

Importing the package configures the ``galaxy_pos`` logger. Records go to
stderr and to a rotating file under ``.logs/`` at the project root. Set
``GALAXY_POS_LOG_DIR`` to move the file and ``GALAXY_POS_LOG_LEVEL`` to change
the threshold (``DEBUG`` shows store transactions).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "0.2.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.getenv("GALAXY_POS_LOG_DIR", str(PROJECT_ROOT / ".logs")))
LOG_FILE = LOG_DIR / "galaxy_pos.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _log_level() -> int:
    name = os.getenv("GALAXY_POS_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _rotating_file_handler(formatter: logging.Formatter) -> RotatingFileHandler | None:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: till log disabled, cannot open '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach file and console handlers to the package logger once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(_log_level())
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _rotating_file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger


log = _configure_logging()
log.debug("Galaxy POS %s logging to '%s'", __version__, LOG_FILE)
