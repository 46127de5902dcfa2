"""Logging configuration: rich console output plus an optional file log."""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None, console: Optional[Console] = None) -> logging.Logger:
    """Configure the ``proctorbox`` logger tree. Safe to call more than once."""
    root = logging.getLogger("proctorbox")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.propagate = False

    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=console or Console(stderr=True), rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = str(log_dir / "proctorbox.log")
        if not any(
            isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == log_path
            for h in root.handlers
        ):
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
            root.addHandler(file_handler)

    return root
