"""
trendpipe Logger Module
=======================

Console + size-rotated file logging, stamped with process uptime.

Config: env vars, or config.yaml system.log_level, or:  python main.py --log-level DEBUG
  LOG_LEVEL_CONSOLE    (default INFO)
  LOG_LEVEL_FILE       (default DEBUG)
  TRENDPIPE_LOG_LEVEL  (overrides both when set, e.g. by main.py --log-level)
  LOG_DIR              (default data/logs)
  LOG_MAX_BYTES        (default 20MB)
  LOG_BACKUP_COUNT     (default 5)
"""

import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import colorama
from colorama import Fore, Style

colorama.init()

# ---------------------------------------------------------------------------
# Global boot timestamp (set once at import time)
# ---------------------------------------------------------------------------
_BOOT_TS = time.monotonic()

# ---------------------------------------------------------------------------
# Configurable defaults (overridden via env vars or setup_logger kwargs)
# ---------------------------------------------------------------------------
LOG_LEVEL_CONSOLE = os.environ.get("LOG_LEVEL_CONSOLE", "INFO")
LOG_LEVEL_FILE = os.environ.get("LOG_LEVEL_FILE", "DEBUG")
LOG_DIR = os.environ.get("LOG_DIR", "data/logs")
LOG_MAX_BYTES = int(os.environ.get("LOG_MAX_BYTES", str(20 * 1024 * 1024)))
LOG_BACKUP_COUNT = int(os.environ.get("LOG_BACKUP_COUNT", "5"))


def _uptime() -> str:
    """Human-readable uptime since process start."""
    secs = int(time.monotonic() - _BOOT_TS)
    if secs < 60:
        return f"{secs}s"
    if secs < 3600:
        return f"{secs // 60}m{secs % 60:02d}s"
    hours = secs // 3600
    mins = (secs % 3600) // 60
    return f"{hours}h{mins:02d}m"


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

class StructuredFormatter(logging.Formatter):
    """File formatter with uptime, no colours."""

    def format(self, record):
        record.uptime = _uptime()
        return super().format(record)


class ColoredFormatter(logging.Formatter):
    """Console formatter with ANSI colors and uptime."""

    COLORS = {
        'DEBUG': Fore.CYAN,
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.RED + Style.BRIGHT,
    }
    RESET = Style.RESET_ALL

    def format(self, record):
        record.uptime = _uptime()
        color = self.COLORS.get(record.levelname, '')
        record.levelname = f"{color}{record.levelname:8}{self.RESET}"
        return super().format(record)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

_ROOT_LOGGER_CONFIGURED = False


def setup_logger(
    name: str = 'trendpipe',
    level: Optional[str] = None,
    log_dir: Optional[str] = None,
    console_level: Optional[str] = None,
    file_level: Optional[str] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
    log_to_file: bool = True,
) -> logging.Logger:
    """
    Set up the root trendpipe logger with console + size-rotated file handlers.

    Call once at startup.  Subsequent calls return the existing logger.
    """
    global _ROOT_LOGGER_CONFIGURED

    logger = logging.getLogger(name)
    if _ROOT_LOGGER_CONFIGURED:
        return logger

    level = os.environ.get("TRENDPIPE_LOG_LEVEL") or level
    log_dir = log_dir or LOG_DIR
    # Single 'level' sets both console and file when console_level/file_level not explicitly set
    console_level = (console_level or level or LOG_LEVEL_CONSOLE).upper()
    file_level = (file_level or level or LOG_LEVEL_FILE).upper()
    max_bytes = max_bytes or LOG_MAX_BYTES
    backup_count = backup_count or LOG_BACKUP_COUNT

    logger.setLevel(logging.DEBUG)  # handlers do their own filtering

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level, logging.INFO))
    console_handler.setFormatter(ColoredFormatter(
        '%(asctime)s [%(uptime)s] %(levelname)s %(name)s  %(message)s',
        datefmt='%H:%M:%S',
    ))
    logger.addHandler(console_handler)

    if log_to_file:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            filename=log_path / 'trendpipe.log',
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8',
        )
        file_handler.setLevel(getattr(logging, file_level, logging.DEBUG))
        file_handler.setFormatter(StructuredFormatter(
            '%(asctime)s [%(uptime)s] %(levelname)-8s %(name)s  %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        logger.addHandler(file_handler)

    _ROOT_LOGGER_CONFIGURED = True
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger for a specific component."""
    return logging.getLogger(f'trendpipe.{name}')


def get_stage_logger(stage_name: str) -> logging.Logger:
    """Get logger for a pipeline stage."""
    return get_logger(f'pipeline.{stage_name}')
