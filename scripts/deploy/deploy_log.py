"""Run log: timestamped lines on the console and in `deploy_YYYYMMDD.log`."""

from __future__ import annotations

import logging
import os
import sys
from datetime import date
from pathlib import Path


LOGGER_NAME = "app_deploy"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
STEP_COLOR = "35"


def _supports_color() -> bool:
    # Respect https://no-color.org/
    if "NO_COLOR" in os.environ:
        return False
    return bool(getattr(sys.stdout, "isatty", lambda: False)())


def _color(text: str, code: str) -> str:
    return f"\x1b[{code}m{text}\x1b[0m"


class RunLogFormatter(logging.Formatter):
    """`[2024-01-31 12:00:00] message`, with `ERROR: ` on error records."""

    def __init__(self, *, color: bool = False):
        super().__init__(fmt="[%(asctime)s] %(message)s", datefmt=DATE_FORMAT)
        self._color = color

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        if record.levelno >= logging.ERROR:
            line = line.replace("] ", "] ERROR: ", 1)
        elif record.levelno == logging.WARNING:
            line = line.replace("] ", "] WARNING: ", 1)
        if self._color and getattr(record, "step", False):
            line = _color(line, STEP_COLOR)
        return line


def log_file_name(day: date | None = None) -> str:
    return f"deploy_{(day or date.today()).strftime('%Y%m%d')}.log"


def setup_logging(*, log_dir: Path, day: date | None = None) -> Path:
    """Attach console + per-day file handlers to the app logger; returns the log path.

    Calling it again replaces the handlers (tests, repeated main() calls).
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / log_file_name(day)

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.INFO)
    logger.propagate = False

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(RunLogFormatter(color=_supports_color()))
    logger.addHandler(console)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(RunLogFormatter())
    logger.addHandler(file_handler)
    return log_path


class StepLogger:
    """Numbered `=== Step N: ... ===` headers."""

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or logging.getLogger(LOGGER_NAME)
        self.step_number = 0

    def step(self, title: str) -> None:
        self.step_number += 1
        self._logger.info("=== Step %s: %s ===", self.step_number, title, extra={"step": True})
