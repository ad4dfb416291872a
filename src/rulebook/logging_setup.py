"""Diagnostic logging configuration for the CLI entry point."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

LOG_FILE_NAME = "rulebook.log"

_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class _ConsoleNoiseFilter(logging.Filter):
    """Keep rulebook records on the console, third-party records only at ERROR+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "rulebook" or record.name.startswith("rulebook."):
            return True
        return record.levelno >= logging.ERROR


class _DiagnosticFileHandler(logging.FileHandler):
    """File handler that creates its directory on the first record."""

    def __init__(self, path: Path) -> None:
        super().__init__(str(path), encoding="utf-8", delay=True)

    def _open(self):
        Path(self.baseFilename).parent.mkdir(parents=True, exist_ok=True)
        return super()._open()


def setup_logging(
    *,
    log_dir: Path | None = None,
    console_level: int = logging.WARNING,
    file_level: int = logging.DEBUG,
) -> None:
    """Configure a stderr handler and, when ``log_dir`` is given, a debug file.

    Call once, before the first log record is emitted.
    """

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    if log_dir is not None:
        use_log_dir(log_dir, level=file_level)

    logging.captureWarnings(True)


def use_log_dir(log_dir: Path, *, level: int = logging.DEBUG) -> Path:
    """Point the diagnostic file handler at ``<log_dir>/rulebook.log``.

    Replaces a previously attached diagnostic file; other handlers are left
    alone.  Nothing is created on disk until a record is written.
    """

    root = logging.getLogger()
    path = log_dir / LOG_FILE_NAME
    for handler in list(root.handlers):
        if isinstance(handler, _DiagnosticFileHandler):
            if handler.baseFilename == os.path.abspath(path):
                return path
            root.removeHandler(handler)
            handler.close()

    file_handler = _DiagnosticFileHandler(path)
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
    root.addHandler(file_handler)
    if root.level > level:
        root.setLevel(level)
    return path
