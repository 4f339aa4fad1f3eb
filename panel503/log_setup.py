"""
Logging setup shared by the server, the headless panel and the CLI.

Same layout as the vECU tool logs: everything (DEBUG+) goes to a per-run
file under ``logs/``, the console only gets WARNING+ unless ``--verbose``.

Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

LOG_DIR_NAME = "logs"         # under the current directory unless log_dir is given


def setup_logging(
    name: str = "panel503",
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    log_file: bool = True,
) -> logging.Logger:
    """
    Configure and return the ``name`` logger.

    Library modules log to children of ``panel503`` so configuring the
    package logger once picks them all up. Calling this twice returns the
    already configured logger untouched.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)

    # ── File handler: captures everything (DEBUG+) ──
    path = None
    if log_file:
        log_dir = Path(log_dir) if log_dir else Path.cwd() / LOG_DIR_NAME
        log_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = log_dir / f"{name}_{ts}.log"
        fh = logging.FileHandler(str(path), encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logger.addHandler(fh)

    # ── Console handler: only important stuff (WARNING+ default) ──
    ch = RichHandler(
        level=console_level,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    ch.setLevel(console_level)
    logger.addHandler(ch)

    logger.info("=" * 60)
    logger.info("Logger initialized: %s", name)
    if path:
        logger.info("Log file: %s", path)
    logger.info("Console level: %s", logging.getLevelName(console_level))
    logger.info("=" * 60)

    return logger
