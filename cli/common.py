from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console

from . import APP_ROOT

_CONSOLE = Console()
LOG_DIR = APP_ROOT / "logs" / "cli"
QUIET_LOGGERS = ("urllib3", "asyncio")


def console() -> Console:
    return _CONSOLE


def ensure_dir(path: Path) -> Path:
    """Create the parent directory of an output file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def configure_logging(name: str, level: int = logging.INFO) -> Path:
    """Log CLI runs to ``logs/cli/<name>.log``; only warnings reach the terminal."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_path = LOG_DIR / f"{name}.log"
    echo = logging.StreamHandler()
    echo.setLevel(logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path, encoding="utf-8"), echo],
    )
    for noisy in QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return log_path
