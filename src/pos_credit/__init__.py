"""POS Credit: checkout with full, partial and credit payment plans.

Importing the package wires up its logger. Records go to a rotating file
under ``.logs/`` (or ``$POS_CREDIT_LOG_DIR``) and warnings are echoed to
stderr so terminal operators see rejected payments and failed commits.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

__version__ = "0.1.0"

LOG_DIR_ENV = "POS_CREDIT_LOG_DIR"
DEFAULT_LOG_DIR = Path(__file__).resolve().parents[2] / ".logs"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def resolve_log_dir(log_dir: Optional[Union[str, Path]] = None) -> Path:
    """Pick the log directory: explicit argument, then environment, then default."""

    if log_dir is not None:
        return Path(log_dir)
    from_env = os.environ.get(LOG_DIR_ENV)
    return Path(from_env) if from_env else DEFAULT_LOG_DIR


def configure_logging(
    name: str = __name__,
    *,
    log_dir: Optional[Union[str, Path]] = None,
    console_level: int = logging.WARNING,
) -> logging.Logger:
    """Attach the file and console handlers to logger ``name`` once.

    Calling it again for a logger that already has handlers returns the
    logger untouched. When the log file cannot be opened only the console
    handler is attached.

    Args:
        name (str): Logger name; defaults to the package logger.
        log_dir (str | Path | None): Directory for ``<name>.log``.
        console_level (int): Threshold for the stderr handler.

    Returns:
        logging.Logger: The configured logger.
    """

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    directory = resolve_log_dir(log_dir)
    log_file = directory / f"{name}.log"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{log_file}': {exc}", file=sys.stderr)
    else:
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = configure_logging()
log.info("Logger initialized for the 'pos_credit' package.")
